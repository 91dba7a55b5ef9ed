"""VDID - Velon Decentralized Identity core."""

__version__ = "0.1.0"
