"""
Churn detection: ratio-tiered risk of a buyer not coming back.

Modules
-------
detector : ChurnAssessment + assess() / classify_ratio() / risk_score()
           + overall_assessment() + reconcile() — pure functions, no DB.
"""
