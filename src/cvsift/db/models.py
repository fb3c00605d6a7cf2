"""Domain models for the cvsift database layer."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass


def source_id_for(kind: str, value: str) -> str:
    """Content hash of an origin descriptor; the stable id of a Source."""
    return hashlib.sha256(f"{kind}:{value}".encode("utf-8")).hexdigest()


@dataclass
class Source:
    id: str
    kind: str  # file | url
    value: str
    created_at: str | None = None

    @classmethod
    def for_origin(cls, kind: str, value: str) -> Source:
        return cls(id=source_id_for(kind, value), kind=kind, value=value)


@dataclass
class Document:
    id: str
    source_id: str | None
    file_name: str
    location: str
    checksum: str
    text_content: str | None = None
    indexed: bool = False


@dataclass
class AnalysisCacheEntry:
    id: str
    document_id: str
    job_context_hash: str
    suitability_score: float
    suitable: bool
    report: str = "{}"
    created_at: str | None = None

    @property
    def report_dict(self) -> dict:
        return json.loads(self.report)
