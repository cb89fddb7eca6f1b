"""
Threshold alerts over saved queries: evaluation and notification.
"""
