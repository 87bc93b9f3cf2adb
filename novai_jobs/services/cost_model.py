"""
Pricing in cents. Every function is pure, never negative, and rounds up.
"""
from __future__ import annotations

import math
from decimal import Decimal
from typing import Iterable, Union

Number = Union[int, float, Decimal]

# Per image
TEXT_TO_IMAGE_CENTS = 3
FACE_IDENTITY_IMAGE_CENTS = 4
DIAGRAM_IMAGE_CENTS = 2
SINGLE_FRAME_SWAP_CENTS = 1

# Per request
TRAINING_FLAT_CENTS = 200
KLING_FLAT_CENTS = 40

# Per second of output video, by resolution tier
VIDEO_CENTS_PER_SECOND = {
    "480p": 4,
    "580p": 6,
    "720p": 8,
}
DEFAULT_VIDEO_TIER = "720p"

# Per frame (frame-accurate processing)
FRAME_CENTS = Decimal("0.5")


def ceil_cents(amount: Number) -> int:
    value = Decimal(str(amount))
    if value <= 0:
        return 0
    return int(math.ceil(value))


def per_image_cost(count: Number, cents_per_image: Number) -> int:
    return ceil_cents(Decimal(str(max(count, 0))) * Decimal(str(cents_per_image)))


def video_cents_per_second(resolution: str | None) -> int:
    return VIDEO_CENTS_PER_SECOND.get((resolution or "").lower(), VIDEO_CENTS_PER_SECOND[DEFAULT_VIDEO_TIER])


def per_second_video_cost(seconds: Number, resolution: str | None) -> int:
    return ceil_cents(Decimal(str(max(seconds, 0))) * video_cents_per_second(resolution))


def per_frame_cost(frames: Number, cents_per_frame: Number = FRAME_CENTS) -> int:
    return ceil_cents(Decimal(str(max(frames, 0))) * Decimal(str(cents_per_frame)))


def flat_request_cost(cents: Number) -> int:
    return ceil_cents(cents)


def total_cost(stage_costs: Iterable[Number]) -> int:
    return sum(ceil_cents(c) for c in stage_costs)
