"""
Geographic grid generation.

Large areas return more distinct places when searched cell by cell, so a
job may ask for its location to be split into a grid of sub-locations.
"""

import asyncio
import logging
from typing import List, Optional, Tuple

import aiohttp

from api.config import config

logger = logging.getLogger(__name__)

BoundingBox = Tuple[float, float, float, float]  # south, north, west, east

DEFAULT_GRID_ZOOM = 14


async def fetch_bounding_box(
    location: str,
    *,
    url: Optional[str] = None,
    user_agent: Optional[str] = None,
    timeout_seconds: float = 15,
) -> Optional[BoundingBox]:
    """Geocode ``location`` and return its bounding box, or None if not found."""
    params = {"q": location, "format": "json", "limit": "1"}
    headers = {"User-Agent": user_agent or config.GEOCODER_USER_AGENT}

    try:
        timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url or config.GEOCODER_URL, params=params, headers=headers) as resp:
                if resp.status != 200:
                    logger.warning(f"Geocoder returned {resp.status} for {location!r}")
                    return None
                data = await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        logger.warning(f"Geocoding failed for {location!r}: {e}")
        return None

    if not data or not data[0].get("boundingbox"):
        logger.info(f"No bounding box found for {location!r}")
        return None

    south, north, west, east = (float(v) for v in data[0]["boundingbox"])
    logger.info(f"Bounding box for {location!r}: [{south}, {north}, {west}, {east}]")
    return south, north, west, east


def generate_grid(bbox: BoundingBox, grid_size: int) -> List[Tuple[float, float]]:
    """Centre point of each cell of a ``grid_size`` x ``grid_size`` grid, row by row."""
    if grid_size < 1:
        raise ValueError("grid_size must be >= 1")

    south, north, west, east = bbox
    lat_step = (north - south) / grid_size
    lng_step = (east - west) / grid_size

    cells = []
    for i in range(grid_size):
        for j in range(grid_size):
            cells.append((south + (i + 0.5) * lat_step, west + (j + 0.5) * lng_step))
    return cells


def format_sub_location(lat: float, lng: float, zoom: int = DEFAULT_GRID_ZOOM) -> str:
    """Map viewport token for one grid cell, e.g. ``@-8.4095,115.1889,14z``."""
    return f"@{lat:.6f},{lng:.6f},{zoom}z"


async def build_sub_locations(location: str, grid_size: int, zoom: int = DEFAULT_GRID_ZOOM) -> List[str]:
    """Grid cells for ``location``; empty when it cannot be geocoded."""
    bbox = await fetch_bounding_box(location)
    if not bbox:
        return []
    return [format_sub_location(lat, lng, zoom) for lat, lng in generate_grid(bbox, grid_size)]
