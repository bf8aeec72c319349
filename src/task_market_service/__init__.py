"""Task market service: wallet sign-in, ZIP task uploads, worker rewards and payouts."""

__version__ = "0.1.0"
