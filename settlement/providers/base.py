"""Provider adapter interface.

Every payment provider posts callbacks in its own encoding and signs them
its own way. An adapter turns a raw callback into a ``NormalizedEvent`` and
answers whether the raw bytes are authentic; everything downstream only
sees normalized events.
"""
from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple


class EventOutcome(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CLOSED = "CLOSED"
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"


@dataclass
class NormalizedEvent:
    external_id: Optional[str]
    outcome: EventOutcome
    external_status: str
    declared_amount: Optional[str] = None      # major units, verbatim
    provider_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    fields: Dict[str, str] = field(default_factory=dict)


class ProviderAdapter(ABC):
    name: str = ""
    content_type = "text/plain"

    @abstractmethod
    def parse(self, raw_body: str) -> NormalizedEvent:
        """Normalize a callback body; raises MalformedWebhook if unreadable."""

    @abstractmethod
    def signature(self, raw_body: str, headers: Mapping[str, str]) -> Optional[str]:
        """Extract the signature from the body or headers, None if absent."""

    @abstractmethod
    def verify(self, raw_body: str, signature: str) -> bool:
        """True only if ``signature`` authenticates ``raw_body`` with the configured key."""

    @abstractmethod
    def acknowledge(self, ok: bool) -> Tuple[str, str]:
        """Body and content type the provider expects in the response."""

    def fetch_status(self, external_id: str) -> Optional[NormalizedEvent]:
        """Pull the provider's current view of a payment; None when unsupported."""
        return None


def canonical_content(params: Mapping[str, str], exclude: Tuple[str, ...]) -> str:
    """Sorted ``key=value&...`` string over non-empty params, the form both Alipay and WeChat sign."""
    keys = sorted(k for k, v in params.items() if k not in exclude and v not in (None, ""))
    return "&".join(f"{k}={params[k]}" for k in keys)
