"""DNSHA: active/passive high availability for a pair of DNS nodes."""

__version__ = "0.3.0"
