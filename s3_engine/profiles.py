from __future__ import annotations
"""Saved connection profiles: JSON file for settings, OS keychain for secrets."""
from dataclasses import dataclass
import json
import logging
from pathlib import Path
from typing import Any

import keyring
from keyring.errors import KeyringError

from .endpoints import DEFAULT_REGION
from .models import Credentials

KEYCHAIN_SERVICE = "pys3engine"

LOGGER = logging.getLogger(__name__)


@dataclass
class ConnectionProfile:
    """A saved connection; ``secret_key`` is never written to the JSON file."""

    name: str
    endpoint_url: str
    access_key: str
    secret_key: str
    region: str = DEFAULT_REGION
    bucket: str = ""
    use_path_style: bool = False

    def to_credentials(self, bucket: str | None = None) -> Credentials:
        return Credentials(
            access_key=self.access_key,
            secret_key=self.secret_key,
            region=self.region,
            bucket=self.bucket if bucket is None else bucket,
            endpoint=self.endpoint_url,
            use_path_style=self.use_path_style,
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "endpoint_url": self.endpoint_url,
            "access_key": self.access_key,
            "region": self.region,
            "bucket": self.bucket,
            "use_path_style": self.use_path_style,
        }


class KeychainStore:
    """OS keychain access for secret keys, keyed by profile name."""

    def __init__(self, service_name: str = KEYCHAIN_SERVICE):
        self._service_name = service_name

    def get_secret(self, profile_name: str) -> str:
        if not profile_name:
            return ""
        try:
            return keyring.get_password(self._service_name, profile_name) or ""
        except KeyringError as exc:
            LOGGER.warning("Could not read secret for profile '%s': %s", profile_name, exc)
            return ""

    def set_secret(self, profile_name: str, secret_key: str) -> None:
        if not profile_name:
            return
        if not secret_key:
            self.delete_secret(profile_name)
            return
        try:
            keyring.set_password(self._service_name, profile_name, secret_key)
        except KeyringError as exc:
            LOGGER.warning("Could not store secret for profile '%s': %s", profile_name, exc)

    def delete_secret(self, profile_name: str) -> None:
        if not profile_name:
            return
        try:
            keyring.delete_password(self._service_name, profile_name)
        except KeyringError:
            # Usually PasswordDeleteError: nothing stored under that name.
            LOGGER.debug("No secret to delete for profile '%s'", profile_name)


class ProfileStorage:
    """JSON-backed store for connection profiles.

    Plaintext secrets found in the file (written by hand or by an older
    version) are moved into the keychain and stripped on load.
    """

    def __init__(self, storage_path: str | Path | None = None, keychain: KeychainStore | None = None):
        if storage_path is None:
            storage_path = Path.home() / ".pys3engine_connections.json"
        self._path = Path(storage_path)
        self._keychain = keychain or KeychainStore()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> list[ConnectionProfile]:
        data = self._read_data()
        profiles: list[ConnectionProfile] = []
        sanitized: list[dict[str, Any]] = []
        saw_plaintext = False
        for entry in data:
            try:
                name = entry["name"]
                secret_key = entry.get("secret_key", "")
                if secret_key:
                    saw_plaintext = True
                    self._keychain.set_secret(name, secret_key)
                else:
                    secret_key = self._keychain.get_secret(name)
                profile = ConnectionProfile(
                    name=name,
                    endpoint_url=entry["endpoint_url"],
                    access_key=entry["access_key"],
                    secret_key=secret_key,
                    region=entry.get("region") or DEFAULT_REGION,
                    bucket=entry.get("bucket") or "",
                    use_path_style=bool(entry.get("use_path_style", False)),
                )
            except (KeyError, TypeError, AttributeError):
                LOGGER.warning("Skipping malformed profile entry in %s", self._path)
                continue
            profiles.append(profile)
            sanitized.append(profile.to_record())
        if saw_plaintext:
            LOGGER.info("Moved plaintext secrets from %s into the keychain", self._path)
            self._write_data(sanitized)
        return profiles

    def save(self, profiles: list[ConnectionProfile]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = []
        for profile in profiles:
            self._keychain.set_secret(profile.name, profile.secret_key)
            data.append(profile.to_record())
        existing_names = self._load_profile_names()
        current_names = {profile.name for profile in profiles}
        for name in existing_names - current_names:
            self._keychain.delete_secret(name)
        self._write_data(data)

    def _read_data(self) -> list[Any]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Could not read profiles from %s: %s", self._path, exc)
            return []
        return data if isinstance(data, list) else []

    def _load_profile_names(self) -> set[str]:
        names = set()
        for entry in self._read_data():
            name = entry.get("name") if isinstance(entry, dict) else None
            if isinstance(name, str) and name:
                names.add(name)
        return names

    def _write_data(self, data: list[dict[str, Any]]) -> None:
        self._path.write_text(json.dumps(data, indent=2), encoding="utf-8")
