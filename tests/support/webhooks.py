"""Helpers for building signed GitHub webhook deliveries."""

from __future__ import annotations

import hashlib
import hmac
import json
from pathlib import Path
from typing import Any

__all__ = ["load_webhook_payload", "sign_body", "webhook_headers"]

_DATA_DIR = Path(__file__).parent.parent / "data" / "github_webhooks"


def load_webhook_payload(name: str, **updates: Any) -> dict[str, Any]:
    """Load a sample payload from ``tests/data/github_webhooks``.

    Top-level keys in ``updates`` replace those of the sample.
    """
    data = json.loads(_DATA_DIR.joinpath(f"{name}.json").read_text())
    data.update(updates)
    return data


def sign_body(body: bytes, secret: str) -> str:
    """Compute the ``X-Hub-Signature-256`` header value for a body."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def webhook_headers(
    event: str,
    body: bytes,
    secret: str,
    delivery_id: str = "72d3162e-cc78-11e3-81ab-4c9367dc0958",
) -> dict[str, str]:
    """Create the headers GitHub sends with a webhook delivery."""
    return {
        "content-type": "application/json",
        "x-github-event": event,
        "x-github-delivery": delivery_id,
        "x-hub-signature-256": sign_body(body, secret),
    }
