"""Credential verification: passwords, wallets, passkeys, sessions."""
