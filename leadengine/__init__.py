"""Lead lifecycle, two-way SMS conversations and partner credit ledger."""

__version__ = "1.0.0"
