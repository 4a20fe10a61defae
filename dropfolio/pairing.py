"""Pair selection: a cycling shuffled queue and a recency-window sampler."""

from __future__ import annotations

import math
import random
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Literal, Optional, Sequence, Tuple

from .errors import EmptyBucketError
from .models import ImageAsset

PairingMode = Literal["cycle", "recency"]

Shuffle = Callable[[List[ImageAsset]], None]


def _check_buckets(base: Sequence[ImageAsset], overlay: Sequence[ImageAsset]) -> None:
    if not base or not overlay:
        raise EmptyBucketError(
            "No images available to pair; refresh the cache first",
            counts={"baseImagesCount": len(base), "overlayImagesCount": len(overlay)},
        )


@dataclass(frozen=True)
class Pair:
    base: ImageAsset
    overlay: ImageAsset
    index: int = 0
    queue_length: int = 0


def build_pair_queue(
    base: Sequence[ImageAsset],
    overlay: Sequence[ImageAsset],
    shuffle: Shuffle = random.shuffle,
) -> List[Tuple[ImageAsset, ImageAsset]]:
    """Pair independently shuffled buckets, cycling the shorter one.

    The queue has ``max(len(base), len(overlay))`` entries and every asset of
    both buckets appears at least once.
    """

    _check_buckets(base, overlay)
    shuffled_base = list(base)
    shuffled_overlay = list(overlay)
    shuffle(shuffled_base)
    shuffle(shuffled_overlay)

    length = max(len(shuffled_base), len(shuffled_overlay))
    return [
        (shuffled_base[i % len(shuffled_base)], shuffled_overlay[i % len(shuffled_overlay)])
        for i in range(length)
    ]


@dataclass
class CyclingPairQueue:
    """Serve every pair of one queue generation before reshuffling."""

    shuffle: Shuffle = random.shuffle
    pairs: List[Tuple[ImageAsset, ImageAsset]] = field(default_factory=list)
    cursor: int = 0
    source: Optional[Tuple[int, int]] = None
    generations_built: int = 0

    def rebuild(self, base: Sequence[ImageAsset], overlay: Sequence[ImageAsset], source: Tuple[int, int]) -> None:
        self.pairs = build_pair_queue(base, overlay, self.shuffle)
        self.cursor = 0
        self.source = source
        self.generations_built += 1

    def next(
        self,
        base: Sequence[ImageAsset],
        overlay: Sequence[ImageAsset],
        source: Tuple[int, int] = (0, 0),
    ) -> Pair:
        """Return the pair at the cursor and advance.

        ``source`` identifies the bucket generations the queue was built from;
        a change (cache refresh) forces a rebuild.
        """

        _check_buckets(base, overlay)
        if not self.pairs or self.source != source or self.cursor >= len(self.pairs):
            self.rebuild(base, overlay, source)

        index = self.cursor
        base_asset, overlay_asset = self.pairs[index]
        self.cursor += 1
        return Pair(base=base_asset, overlay=overlay_asset, index=index, queue_length=len(self.pairs))


def recency_window_size(bucket_size: int, cap: int = 10) -> int:
    return min(cap, math.floor(bucket_size * 0.5))


@dataclass
class RecencyWindow:
    """Exclude the last few picks of a bucket from the next draw."""

    cap: int = 10
    rng: random.Random = field(default_factory=random.Random)
    recent: List[str] = field(default_factory=list)

    def select(self, assets: Sequence[ImageAsset]) -> ImageAsset:
        if not assets:
            raise EmptyBucketError("Cannot select from an empty bucket")

        size = len(assets)
        window = recency_window_size(size, self.cap)
        eligible = self._eligible(assets)
        if len(eligible) < size * 0.2:
            # Starvation on small buckets: keep only the two latest picks.
            self.recent = self.recent[-2:]
            eligible = self._eligible(assets) or list(assets)

        choice = self.rng.choice(eligible)
        if window > 0:
            self.recent.append(choice.path)
            if len(self.recent) > window:
                del self.recent[:-window]
        else:
            self.recent.clear()
        return choice

    def _eligible(self, assets: Sequence[ImageAsset]) -> List[ImageAsset]:
        excluded = set(self.recent)
        return [asset for asset in assets if asset.path not in excluded]


class PairEngine:
    """Produce image pairs from two buckets using the configured policy."""

    def __init__(
        self,
        mode: PairingMode = "cycle",
        *,
        recency_cap: int = 10,
        rng: Optional[random.Random] = None,
        shuffle: Optional[Shuffle] = None,
    ) -> None:
        if mode not in ("cycle", "recency"):
            raise ValueError(f"Unknown pairing mode: {mode}")
        self.mode = mode
        self._rng = rng or random.Random()
        self.queue = CyclingPairQueue(shuffle=shuffle or self._rng.shuffle)
        self.windows: Dict[str, RecencyWindow] = {
            "base": RecencyWindow(cap=recency_cap, rng=self._rng),
            "overlay": RecencyWindow(cap=recency_cap, rng=self._rng),
        }
        self._lock = threading.Lock()

    def next_pair(
        self,
        base: Sequence[ImageAsset],
        overlay: Sequence[ImageAsset],
        source: Tuple[int, int] = (0, 0),
    ) -> Pair:
        """Return the next pair; queue regeneration and window updates are serialised."""

        _check_buckets(base, overlay)
        with self._lock:
            if self.mode == "cycle":
                return self.queue.next(base, overlay, source)
            return Pair(
                base=self.windows["base"].select(base),
                overlay=self.windows["overlay"].select(overlay),
            )
