"""Seed data shared by the server database and the client-side knowledge cache."""

from __future__ import annotations

from typing import Any

DEFAULT_KNOWLEDGE_BASE: list[dict[str, Any]] = [
    {
        "id": "1",
        "topic": "Shipping Policy",
        "content": (
            "Standard shipping takes 3-5 business days. Express shipping takes 1-2 business days. "
            "Free shipping is available on orders over $50."
        ),
    },
    {
        "id": "2",
        "topic": "Return Policy",
        "content": (
            "Items can be returned within 30 days of purchase. Must be in original condition with tags. "
            "Refunds are processed within 7-10 business days."
        ),
    },
    {
        "id": "3",
        "topic": "Working Hours",
        "content": (
            "Our support team is available Monday to Friday, from 9 AM to 6 PM EST. "
            "We are closed on weekends and public holidays."
        ),
    },
]
