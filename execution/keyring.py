"""
Signing identity loader.

Decrypts a V3 JSON keystore with its passphrase once at startup and
returns the resulting account.  The account is read-only for the
lifetime of the process and signs every outgoing transaction.
"""

from __future__ import annotations

import json
from pathlib import Path

from eth_account import Account
from eth_account.signers.local import LocalAccount


class KeyringError(Exception):
    """Raised when the keystore cannot be read or decrypted."""


def load_identity(keystore_path: str | Path, passphrase: str) -> LocalAccount:
    """Load and decrypt the keystore at ``keystore_path``."""
    try:
        with open(keystore_path, "r") as f:
            keystore = json.load(f)
    except FileNotFoundError as exc:
        raise KeyringError(f"Keystore not found: {keystore_path}") from exc
    except json.JSONDecodeError as exc:
        raise KeyringError(f"Keystore {keystore_path} is not valid JSON: {exc}") from exc

    try:
        private_key = Account.decrypt(keystore, passphrase)
    except ValueError as exc:
        # eth_account raises ValueError for a wrong passphrase (MAC mismatch)
        raise KeyringError(f"Unable to decrypt keystore {keystore_path}: {exc}") from exc

    return Account.from_key(private_key)
