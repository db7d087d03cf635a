"""Signal correlation and compound-event engine for resident care monitoring.

This package contains the domain models and the correlation pipeline,
isolated from persistence and scheduling so it is easy to test and reason about.
"""
