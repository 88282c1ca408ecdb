from __future__ import annotations
"""Key composition, size formatting and package metadata helpers."""
from dataclasses import dataclass
from datetime import datetime
from importlib.metadata import PackageNotFoundError, metadata, version

DIST_NAME = "pys3engine"
SIZE_UNIT_FACTORS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024 * 1024,
    "GB": 1024 * 1024 * 1024,
}


@dataclass(frozen=True)
class PackageInfo:
    name: str
    version: str
    summary: str


def load_package_info(dist_name: str = DIST_NAME) -> PackageInfo:
    try:
        distribution_metadata = metadata(dist_name)
        package_version = version(dist_name)
    except PackageNotFoundError:
        return PackageInfo(
            name=dist_name,
            version="",
            summary="Client engine for S3-compatible object storage.",
        )
    return PackageInfo(
        name=distribution_metadata.get("Name") or dist_name,
        version=package_version,
        summary=distribution_metadata.get("Summary") or "",
    )


def parse_size_bytes(value: str) -> int | None:
    """Parse ``"5"``, ``"5MB"`` or ``"5 mb"`` into bytes; ``None`` if invalid."""

    text = (value or "").strip().upper()
    unit = "B"
    for candidate in ("GB", "MB", "KB", "B"):
        if text.endswith(candidate):
            unit = candidate
            text = text[: -len(candidate)].strip()
            break
    try:
        amount = int(text)
    except ValueError:
        return None
    if amount <= 0:
        return None
    return amount * SIZE_UNIT_FACTORS[unit]


def format_size(size: int | None) -> str:
    if size is None:
        return "-"
    suffixes = ["B", "KB", "MB", "GB", "TB"]
    value = float(max(size, 0))
    for suffix in suffixes:
        if value < 1024 or suffix == suffixes[-1]:
            return f"{value:.1f} {suffix}" if suffix != "B" else f"{int(value)} {suffix}"
        value /= 1024
    return f"{size} B"


def format_last_modified(last_modified: datetime | None) -> str:
    if last_modified is None:
        return "-"
    return last_modified.strftime("%Y-%m-%d %H:%M:%S %Z").strip()


def compose_s3_key(prefix: str, name: str) -> str:
    key_name = name.strip()
    if not key_name:
        raise ValueError("Object name cannot be empty")
    cleaned_prefix = prefix.strip().lstrip("/")
    if cleaned_prefix and not cleaned_prefix.endswith("/"):
        cleaned_prefix += "/"
    return f"{cleaned_prefix}{key_name}" if cleaned_prefix else key_name


def folder_prefix(prefix: str) -> str:
    """Normalise a user-typed folder path to ``a/b/`` form; empty stays empty."""

    cleaned = prefix.strip().strip("/")
    return f"{cleaned}/" if cleaned else ""


def key_basename(key: str, default: str = "download") -> str:
    cleaned = key.strip().rstrip("/")
    if not cleaned:
        return default
    return cleaned.rsplit("/", 1)[-1] or default
