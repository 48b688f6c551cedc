from __future__ import annotations

import math
from collections.abc import Mapping

from media_backend.media.types import Box, SizedVariant


def _round_div(numerator: int, denominator: int) -> int:
    # Round half up, integer-only so results are exact for any input size.
    return (2 * numerator + denominator) // (2 * denominator)


def fit_into_box(size: Box, bound: Box) -> Box:
    """Scale ``size`` so that it exactly fits into ``bound``, keeping the aspect ratio."""
    w, h = size.width, size.height
    bw, bh = bound.width, bound.height
    if w * bh > h * bw:
        return Box(width=max(bw, 1), height=max(_round_div(h * bw, w), 1))
    return Box(width=max(_round_div(w * bh, h), 1), height=max(bh, 1))


def fits_within(size: Box, bound: Box) -> bool:
    return size.width <= bound.width and size.height <= bound.height


def get_image_preview_sizes(
    size: Box, bounds: Mapping[str, tuple[int, int]]
) -> list[SizedVariant]:
    """Preview sizes for an image, largest first.

    A bound produces a variant only if the image does not already fit into it.
    """
    result: list[SizedVariant] = []
    for variant, (bw, bh) in bounds.items():
        bound = Box(width=bw, height=bh)
        if fits_within(size, bound):
            continue
        fitted = fit_into_box(size, bound)
        result.append(SizedVariant(variant=variant, width=fitted.width, height=fitted.height))
    result.sort(key=lambda v: v.width, reverse=True)
    return result


def _down_to_even(x: int) -> int:
    return x if x % 2 == 0 else x - 1


def get_video_preview_sizes(size: Box, short_sides: Mapping[str, int]) -> list[SizedVariant]:
    """Preview sizes for a video, largest first. Never empty.

    Every preset whose short side fits into the video gets a variant with the
    long side scaled to an even number. The video's own size (rounded down to
    even) takes over the largest preset when the video is only slightly
    bigger than it, or the closest preset when the video is smaller than some
    of them.
    """
    presets = sorted(short_sides.items(), key=lambda kv: kv[1], reverse=True)
    if not presets:
        raise ValueError("no video preview presets configured")

    short_side = min(size.width, size.height)
    long_side = max(size.width, size.height)
    own_size = Box(width=_down_to_even(size.width), height=_down_to_even(size.height))

    previews: dict[str, Box] = {}
    for variant, preset in presets:
        if short_side >= preset:
            new_long_side = _round_div(preset * long_side, short_side * 2) * 2
            if short_side == size.width:
                previews[variant] = Box(width=preset, height=new_long_side)
            else:
                previews[variant] = Box(width=new_long_side, height=preset)

    largest_variant, largest_preset = presets[0]
    if short_side > largest_preset:
        if short_side < largest_preset * 1.25:
            previews[largest_variant] = own_size
    else:
        matched = min(presets, key=lambda kv: abs(math.log(short_side / kv[1])))[0]
        previews[matched] = own_size

    result = [SizedVariant(variant=v, width=b.width, height=b.height) for v, b in previews.items()]
    result.sort(key=lambda v: v.width, reverse=True)
    return result
