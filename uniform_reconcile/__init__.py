"""ObjectId to string-id reconciliation tooling for the uniform-distribution database."""

__version__ = "0.1.0"
