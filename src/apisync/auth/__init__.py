"""Credential handling for apisync."""

from apisync.auth.credentials import CredentialStore, CredentialStoreError, Credentials

__all__ = ["CredentialStore", "CredentialStoreError", "Credentials"]
