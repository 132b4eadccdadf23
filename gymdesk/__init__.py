"""gymdesk: subscription lifecycle and payment ledger core of the gym admin dashboard."""

__version__ = "1.0.0"
