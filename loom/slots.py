"""Slot handling for Loom.

Content nested inside an import element is split into buckets before it is
injected into the imported fragment:

- Elements with ``data-target="name"`` go to the named bucket ``name``. A
  ``<template>`` contributes its inner content; any other element contributes
  itself with the attribute removed. When a name repeats, the last one wins.
- Everything else forms the default bucket.

Fragments declare placeholders with ``<slot name="name">fallback</slot>`` and
``<slot>fallback</slot>``. Each bucket fills the first matching placeholder.
Unfilled placeholders survive until the outermost composition pass so that an
enclosing layout or import can still fill them; only then are they replaced by
their fallback content.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .html_utils import Element, find_elements, has_tag, without_attribute

TARGET_ATTR = "data-target"
IMPORT_ATTR = "data-import"

# Bound on fallback unwrapping for slots nested inside slot fallbacks.
_MAX_FINALIZE_PASSES = 32


@dataclass
class SlotContent:
    """Caller content for an import.

    Attributes:
        default: Untargeted content.
        named: Targeted content by slot name.
    """

    default: str = ""
    named: dict[str, str] = field(default_factory=dict)

    @property
    def has_default(self) -> bool:
        return bool(self.default.strip())


def partition_slot_content(html: str) -> SlotContent:
    """Split caller content into default and named buckets.

    Targets inside nested import elements belong to those imports and are
    left in place.
    """
    elements = find_elements(
        html, lambda token: token.has_attr(TARGET_ATTR) or token.has_attr(IMPORT_ATTR)
    )
    named: dict[str, str] = {}
    pieces: list[str] = []
    cursor = 0
    for element in elements:
        if element.has_attr(IMPORT_ATTR) and not element.has_attr(TARGET_ATTR):
            continue
        name = (element.attr(TARGET_ATTR) or "").strip()
        if not name:
            continue
        pieces.append(html[cursor : element.start])
        cursor = element.end
        if element.tag == "template":
            named[name] = element.inner(html)
        else:
            named[name] = without_attribute(html, element, TARGET_ATTR)
    pieces.append(html[cursor:])
    return SlotContent(default="".join(pieces), named=named)


def _slot_name(element: Element) -> str:
    return (element.attr("name") or "").strip()


def inject_slots(html: str, content: SlotContent) -> str:
    """Fill a fragment's placeholders with caller content.

    Placeholders are located once before any replacement, so injected content
    is never itself searched for placeholders.

    Args:
        html: Fragment markup containing ``<slot>`` placeholders.
        content: Caller content buckets.

    Returns:
        Markup with filled placeholders replaced; unfilled ones untouched.
    """
    replacements: list[tuple[Element, str]] = []
    used: set[str] = set()
    for slot in find_elements(html, has_tag("slot")):
        name = _slot_name(slot)
        if name in used:
            continue
        if name and name in content.named:
            replacements.append((slot, content.named[name]))
            used.add(name)
        elif not name and content.has_default:
            replacements.append((slot, content.default))
            used.add(name)
    for slot, value in reversed(replacements):
        html = html[: slot.start] + value + html[slot.end :]
    return html


def finalize_slots(html: str) -> str:
    """Replace every remaining placeholder with its fallback content."""
    for _ in range(_MAX_FINALIZE_PASSES):
        slots = find_elements(html, has_tag("slot"))
        if not slots:
            break
        for slot in reversed(slots):
            html = html[: slot.start] + slot.inner(html) + html[slot.end :]
    return html


def extract_targets(html: str, name: str) -> tuple[str, list[str]]:
    """Remove the elements targeting ``name`` and return them separately.

    Returns:
        Tuple of (remaining markup, targeted content in document order).
    """
    elements = find_elements(
        html, lambda token: (token.attr(TARGET_ATTR) or "").strip() == name
    )
    found: list[str] = []
    pieces: list[str] = []
    cursor = 0
    for element in elements:
        pieces.append(html[cursor : element.start])
        cursor = element.end
        if element.tag == "template":
            found.append(element.inner(html))
        else:
            found.append(without_attribute(html, element, TARGET_ATTR))
    pieces.append(html[cursor:])
    return "".join(pieces), found
