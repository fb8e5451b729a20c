#!/usr/bin/env python3
"""
State Store

Remembers which provider resource backs each role between runs:
- Ordered role -> resource record mapping
- Run metadata (project, region, timestamps)
- Atomic saves so an interrupted run never leaves a torn file
- Keys written by newer versions are carried through untouched
"""

import os
import json
import tempfile
from datetime import datetime, timezone
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Any, Optional

from ..errors import CorruptState, MissingDependency

RESOURCES_KEY = "resources"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class ResourceRecord:
    """A provisioned resource, identified by its role."""

    role: str
    provider_id: str
    created_at: str
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {"provider_id": self.provider_id, "created_at": self.created_at}
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data

    @classmethod
    def from_dict(cls, role: str, data: Dict[str, Any]) -> "ResourceRecord":
        extra = {k: v for k, v in data.items() if k not in ("provider_id", "created_at")}
        return cls(
            role=role,
            provider_id=data["provider_id"],
            created_at=data.get("created_at") or utc_timestamp(),
            extra=extra,
        )


class StateStore:
    """
    JSON-backed store of role -> provider id.

    The document keeps run metadata at the top level and the records under
    "resources", in the order the roles were first recorded.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.metadata: Dict[str, Any] = {}
        self._records: Dict[str, ResourceRecord] = {}

    def load(self) -> Dict[str, str]:
        """Read the document from disk. A missing file is an empty store."""
        self.metadata = {}
        self._records = {}

        if not self.path.exists():
            return {}

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except ValueError as e:
            raise CorruptState(str(self.path), str(e)) from e

        if not isinstance(data, dict):
            raise CorruptState(str(self.path), "top level is not a JSON object")

        resources = data.pop(RESOURCES_KEY, {})
        if not isinstance(resources, dict):
            raise CorruptState(str(self.path), f"'{RESOURCES_KEY}' is not a JSON object")

        for role, record in resources.items():
            if not isinstance(record, dict) or not isinstance(record.get("provider_id"), str):
                raise CorruptState(str(self.path), f"record for '{role}' has no provider_id")
            self._records[role] = ResourceRecord.from_dict(role, record)

        self.metadata = data
        return self.snapshot()

    def get(self, role: str) -> str:
        record = self._records.get(role)
        if record is None:
            raise MissingDependency(role)
        return record.provider_id

    def record(self, role: str) -> Optional[ResourceRecord]:
        return self._records.get(role)

    def has(self, role: str) -> bool:
        return role in self._records

    def roles(self) -> List[str]:
        return list(self._records)

    def put(self, role: str, provider_id: str):
        current = self._records.get(role)
        if current is not None and current.provider_id == provider_id:
            return
        self._records[role] = ResourceRecord(
            role=role, provider_id=provider_id, created_at=utc_timestamp()
        )

    def remove(self, role: str):
        self._records.pop(role, None)

    def snapshot(self) -> Dict[str, str]:
        return {role: record.provider_id for role, record in self._records.items()}

    def set_metadata(self, **values: Any):
        for key, value in values.items():
            if value is not None:
                self.metadata[key] = value

    def to_document(self) -> Dict[str, Any]:
        document = dict(self.metadata)
        document[RESOURCES_KEY] = {
            role: record.to_dict() for role, record in self._records.items()
        }
        return document

    def save(self):
        """Write the document atomically: temp file in the same directory, then rename."""
        now = utc_timestamp()
        self.metadata.setdefault("created_timestamp", now)
        self.metadata["updated_timestamp"] = now

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self.to_document(), f, indent=2)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def destroy(self):
        """Delete the document once every resource is gone."""
        if self.path.exists():
            self.path.unlink()
        self.metadata = {}
        self._records = {}

    def __contains__(self, role: str) -> bool:
        return self.has(role)

    def __len__(self) -> int:
        return len(self._records)
