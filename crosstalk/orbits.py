"""
Orbit assignment: deterministic recency buckets over the track collection.

Orbits are recomputed on every read and never stored.  Orbit 0 holds the
newest tracks, orbit N-1 the oldest.  Anything that needs to know which orbit
a track sits in (the layout radius, an orbit filter) must go through
``assign_orbits``.
"""

import math
from typing import Dict, List, Sequence

from .models import Track

DEFAULT_ORBIT_COUNT = 4

# Radius of each orbit relative to its emotion star; orbits past the
# table continue at the same spacing.
ORBIT_RADII = (1.0, 1.3, 1.6, 1.9)
_RADIUS_STEP = 0.3


def assign_orbits(tracks: Sequence[Track], orbit_count: int = DEFAULT_ORBIT_COUNT) -> List[List[Track]]:
    """
    Partition ``tracks`` into ``orbit_count`` buckets by ``added_at``, newest first.

    The sort is stable, so tracks with equal ``added_at`` keep their input
    order and repeated calls on the same input return the same partition.

    Raises:
        ValueError: if ``orbit_count`` is less than 1.
    """
    if orbit_count < 1:
        raise ValueError(f"orbit_count must be >= 1, got {orbit_count}")

    ordered = sorted(tracks, key=lambda t: t.added_at, reverse=True)
    per_orbit = math.ceil(len(ordered) / orbit_count)

    orbits: List[List[Track]] = [[] for _ in range(orbit_count)]
    for i, track in enumerate(ordered):
        orbits[min(i // max(per_orbit, 1), orbit_count - 1)].append(track)
    return orbits


def orbit_radius(index: int) -> float:
    if index < len(ORBIT_RADII):
        return ORBIT_RADII[index]
    return round(ORBIT_RADII[-1] + _RADIUS_STEP * (index - len(ORBIT_RADII) + 1), 3)


def tracks_in_orbit(tracks: Sequence[Track], index: int, orbit_count: int = DEFAULT_ORBIT_COUNT) -> List[Track]:
    if not 0 <= index < orbit_count:
        raise ValueError(f"orbit index {index} out of range for {orbit_count} orbits")
    return assign_orbits(tracks, orbit_count)[index]


def orbit_layout(tracks: Sequence[Track], orbit_count: int = DEFAULT_ORBIT_COUNT) -> List[Dict]:
    """Per-track placement: orbit index, radius and slot within the orbit."""
    layout = []
    for index, orbit in enumerate(assign_orbits(tracks, orbit_count)):
        radius = orbit_radius(index)
        for slot, track in enumerate(orbit):
            layout.append({
                "trackId": track.id,
                "emotion": track.emotion,
                "orbit": index,
                "radius": radius,
                "position": slot,
                "orbitSize": len(orbit),
            })
    return layout
