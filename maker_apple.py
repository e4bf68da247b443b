# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Maker Apple fields 33 and 48 from an HDR headroom, and back.

Apple readers derive the display headroom in stops from two MakerNote fields
with a piecewise linear map:

    maker33 <  1, maker48 <= 0.01:  stops = -20    * maker48 + 1.8
    maker33 <  1, maker48 >  0.01:  stops = -0.101 * maker48 + 1.601
    maker33 >= 1, maker48 <= 0.01:  stops = -70    * maker48 + 3.0
    maker33 >= 1, maker48 >  0.01:  stops = -0.303 * maker48 + 2.303

The map covers 0 to 3 stops, so headroom is clamped to [1, 8] before inverting.
Every branch is inverted independently and kept only when the result lies in
that branch's domain.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Final

from gainmap_errors import MakerMappingError

__all__: Final[list[str]] = [
    "MAX_HEADROOM",
    "MakerCandidate",
    "MakerResult",
    "ValidationDiffs",
    "maker_from_headroom",
    "stops_from_maker",
    "validate_maker",
    "choose_maker",
]

logger = logging.getLogger(__name__)

MAX_HEADROOM: Final[float] = 8.0
BRANCH_THRESHOLD: Final[float] = 0.01


@dataclass(frozen=True, slots=True)
class _Branch:
    name: str
    maker33: float
    slope: float
    intercept: float
    upper: bool  # True: maker48 > 0.01, False: 0 <= maker48 <= 0.01

    def invert(self, stops: float) -> float:
        return (self.intercept - stops) / -self.slope

    def admits(self, maker48: float) -> bool:
        if not math.isfinite(maker48):
            return False
        if self.upper:
            return maker48 > BRANCH_THRESHOLD
        return 0.0 <= maker48 <= BRANCH_THRESHOLD

    def snap(self, maker48: float) -> float:
        """Nearest value inside the branch domain."""
        if self.upper:
            return max(maker48, math.nextafter(BRANCH_THRESHOLD, math.inf))
        return min(max(maker48, 0.0), BRANCH_THRESHOLD)


# Evaluation order matters for the default choice
_BRANCHES: Final[tuple[_Branch, ...]] = (
    _Branch("<1 & <=0.01", 0.0, -20.0, 1.8, upper=False),
    _Branch("<1 & >0.01", 0.0, -0.101, 1.601, upper=True),
    _Branch(">=1 & <=0.01", 1.0, -70.0, 3.0, upper=False),
    _Branch(">=1 & >0.01", 1.0, -0.303, 2.303, upper=True),
)


@dataclass(frozen=True, slots=True, kw_only=True)
class MakerCandidate:
    """One maker field pair that reproduces the target stops."""

    maker33: float
    maker48: float
    stops: float
    branch: str
    snapped: bool = False


@dataclass(frozen=True, slots=True, kw_only=True)
class MakerResult:
    stops: float
    candidates: tuple[MakerCandidate, ...]
    default: MakerCandidate | None


@dataclass(frozen=True, slots=True, kw_only=True)
class ValidationDiffs:
    target_stops: float
    forward_stops: float
    abs_stops_diff: float
    target_headroom: float
    forward_headroom: float
    rel_headroom_diff: float
    branch: str


def _pick_default(candidates: tuple[MakerCandidate, ...]) -> MakerCandidate | None:
    for candidate in candidates:
        if candidate.maker33 >= 1.0 and candidate.maker48 <= BRANCH_THRESHOLD:
            return candidate
    for candidate in candidates:
        if candidate.maker33 >= 1.0:
            return candidate
    return candidates[0] if candidates else None


def stops_from_maker(maker33: float, maker48: float) -> tuple[float, str]:
    """Forward piecewise map from maker fields to headroom stops."""
    if maker33 < 1.0:
        branch = _BRANCHES[0] if maker48 <= BRANCH_THRESHOLD else _BRANCHES[1]
    else:
        branch = _BRANCHES[2] if maker48 <= BRANCH_THRESHOLD else _BRANCHES[3]
    return branch.slope * maker48 + branch.intercept, branch.name


def maker_from_headroom(headroom: float, *, tol_stops_abs: float = 0.01) -> MakerResult:
    """Invert every branch for the given linear headroom.

    When no branch admits the exact inverse (the narrow seam between the two
    maker33 >= 1 branches just below 2.3 stops), each inverse is moved onto its
    branch's domain boundary and kept if it still lands within tol_stops_abs of
    the target. Such candidates carry snapped=True.

    Raises:
        MakerMappingError: If headroom is NaN or infinite
    """
    if not math.isfinite(headroom):
        raise MakerMappingError(f"No valid makerApple pair for headroom={headroom}")

    clamped = min(max(headroom, 1.0), MAX_HEADROOM)
    stops = math.log2(clamped)

    candidates: list[MakerCandidate] = []
    for branch in _BRANCHES:
        maker48 = branch.invert(stops)
        if branch.admits(maker48):
            candidates.append(
                MakerCandidate(maker33=branch.maker33, maker48=maker48, stops=stops, branch=branch.name)
            )

    if not candidates:
        for branch in _BRANCHES:
            maker48 = branch.snap(branch.invert(stops))
            forward, _ = stops_from_maker(branch.maker33, maker48)
            if abs(forward - stops) <= tol_stops_abs:
                candidates.append(
                    MakerCandidate(
                        maker33=branch.maker33,
                        maker48=maker48,
                        stops=stops,
                        branch=branch.name,
                        snapped=True,
                    )
                )
        if candidates:
            logger.debug("headroom %.6f sits on a branch seam, snapped maker48", clamped)

    found = tuple(candidates)
    return MakerResult(stops=stops, candidates=found, default=_pick_default(found))


def choose_maker(headroom: float, *, tol_stops_abs: float = 0.01) -> tuple[MakerResult, MakerCandidate]:
    """maker_from_headroom plus the default pick, failing when there is none.

    Raises:
        MakerMappingError: If no candidate exists
    """
    result = maker_from_headroom(headroom, tol_stops_abs=tol_stops_abs)
    if result.default is None:
        raise MakerMappingError(f"No valid makerApple pair for headroom={headroom}")
    return result, result.default


def validate_maker(
    headroom: float,
    maker33: float,
    maker48: float,
    tol_stops_abs: float = 0.01,
    tol_headroom_rel: float = 0.02,
) -> tuple[bool, ValidationDiffs]:
    """Check that the maker pair regenerates the target headroom within tolerance."""
    target_headroom = max(headroom, 1.0)
    target_stops = math.log2(target_headroom)
    forward_stops, branch = stops_from_maker(maker33, maker48)
    forward_headroom = 2.0 ** max(forward_stops, 0.0)
    abs_stops_diff = abs(forward_stops - target_stops)
    rel_headroom_diff = abs(forward_headroom - target_headroom) / target_headroom

    ok = abs_stops_diff <= tol_stops_abs and rel_headroom_diff <= tol_headroom_rel
    return ok, ValidationDiffs(
        target_stops=target_stops,
        forward_stops=forward_stops,
        abs_stops_diff=abs_stops_diff,
        target_headroom=target_headroom,
        forward_headroom=forward_headroom,
        rel_headroom_diff=rel_headroom_diff,
        branch=branch,
    )
