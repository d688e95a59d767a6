"""SoundStage backend: credit ledger, plan entitlements and billing."""

__version__ = "0.1.0"
