"""
Model package initializer.

Importing it registers the ORM mappings for any runtime that uses the
database outside of `cluster_billing/main.py` (the one-shot job, tests).
"""

# Import side-effects: register ORM mappings.
from cluster_billing.models import billing_snapshot  # noqa: F401
