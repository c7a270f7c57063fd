"""M-Pesa push-payment reconciliation core."""

__version__ = "0.1.0"
