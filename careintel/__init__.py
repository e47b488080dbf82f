"""
Care-risk intelligence pipeline.

Turns raw caregiving observations into baselines, anomalies, risk scores,
a prioritized worklist with explanations, and SLA-timed escalations.
"""

__version__ = "1.0.0"
