"""Convert zones drawn on a scaled preview into source-pixel redaction zones."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from .models import DisplayZone, Zone

logger = logging.getLogger(__name__)

DEFAULT_MIN_ZONE_PIXELS = 10


def plan(
    display_zones: Iterable[DisplayZone | Mapping[str, Any]],
    display_scale: float,
    min_zone_pixels: int = DEFAULT_MIN_ZONE_PIXELS,
) -> list[Zone]:
    """Return source-space zones in submission order.

    Each rectangle is divided by ``display_scale`` and normalized so reverse
    drags (negative width or height) become regular rectangles. Zones smaller
    than ``min_zone_pixels`` on either side, and zones hidden in the editor,
    are dropped silently. The minimum applies to the rectangle as drawn, which
    is then clipped at the top and left image edges.
    """
    if display_scale is None or display_scale <= 0:
        raise ValueError(f"display_scale must be positive, got {display_scale!r}")

    zones: list[Zone] = []
    for index, raw in enumerate(display_zones):
        zone = raw if isinstance(raw, DisplayZone) else DisplayZone.model_validate(raw)
        if not zone.visible:
            logger.debug("Skipping hidden redaction zone #%d (%s)", index, zone.label)
            continue

        left = min(zone.x, zone.x + zone.w) / display_scale
        top = min(zone.y, zone.y + zone.h) / display_scale
        width = abs(zone.w) / display_scale
        height = abs(zone.h) / display_scale

        if width < min_zone_pixels or height < min_zone_pixels:
            logger.debug(
                "Dropping redaction zone #%d below minimum size (%.1fx%.1f < %d)",
                index,
                width,
                height,
                min_zone_pixels,
            )
            continue

        right = round(left + width)
        bottom = round(top + height)
        if right <= 0 or bottom <= 0:
            logger.debug("Dropping redaction zone #%d outside the image", index)
            continue
        x = max(0, round(left))
        y = max(0, round(top))
        zones.append(Zone(x=x, y=y, width=max(1, right - x), height=max(1, bottom - y)))

    return zones
