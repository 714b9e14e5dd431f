"""Reversed-key helpers for domain-name columns.

Brief:
  Domain names share suffixes (``mail.example.com`` and ``www.example.com``),
  which a sorted store cannot range-scan. Stored query names are written with
  their characters reversed so that a suffix search becomes a prefix search.

Inputs:
  - Plain Python strings.

Outputs:
  - reverse(): character-reversed string; applying it twice is the identity.
  - normalize_name(): lowercase name without a trailing dot.
"""

from __future__ import annotations


def reverse(value: str) -> str:
    """Brief: Reverse the character sequence of a string.

    Inputs:
      - value: Any string, including the empty string.

    Outputs:
      - str: ``value`` with its code points in reverse order.

    Example:
      >>> reverse("www.example.com")
      'moc.elpmaxe.www'
      >>> reverse(reverse("münchen.de"))
      'münchen.de'
    """

    return value[::-1]


def normalize_name(name: str) -> str:
    """Normalize a domain name for storage and lookups.

    Inputs:
        name: Raw name (may have surrounding whitespace, a trailing dot or
            mixed case).

    Outputs:
        Lowercase name with surrounding whitespace and one trailing dot removed.
    """

    norm = name.strip().lower()
    if norm.endswith("."):
        norm = norm[:-1]
    return norm
