"""Budgeted choice of which frames are worth a paid vision call."""
from __future__ import annotations

import logging
import math
from typing import Iterable, List, Sequence

from splitscribe.models import CostEstimate, SimilarityGroup

logger = logging.getLogger(__name__)

DEFAULT_MAX_ANALYSIS_IMAGES = 10
DEFAULT_TOKENS_PER_IMAGE = 1000
# Rough per-token price in JPY for the flash-lite vision tier.
DEFAULT_COST_PER_TOKEN = 0.004
_COST_WARNING = 50
_COST_HIGH_WARNING = 100


def select_frames_for_analysis(
    groups: Sequence[SimilarityGroup],
    max_budget: int = DEFAULT_MAX_ANALYSIS_IMAGES,
    uploaded_ids: Iterable[str] = (),
) -> List[str]:
    """Pick group representatives to analyze.

    Uploaded frames are always returned, outside the group pool, and shrink
    the auto-capture budget by their count. When there are more groups than
    budget, groups are taken at uniform strides along the timeline.
    """
    uploaded = list(dict.fromkeys(uploaded_ids))
    uploaded_set = set(uploaded)
    pool = [group for group in groups if group.representative_id not in uploaded_set]
    budget = max(0, int(max_budget) - len(uploaded))

    if len(pool) <= budget:
        selected = [group.representative_id for group in pool]
    else:
        ordered = sorted(pool, key=lambda group: group.timestamp_sec)
        interval = len(ordered) / budget if budget else 0
        selected = []
        for i in range(budget):
            target = int(math.floor(i * interval))
            if target < len(ordered):
                selected.append(ordered[target].representative_id)

    logger.info(
        "Selected %d of %d group(s) (budget %d) plus %d uploaded frame(s)",
        len(selected),
        len(pool),
        budget,
        len(uploaded),
    )
    return uploaded + selected


def estimate_capture_cost(
    image_count: int,
    tokens_per_image: int = DEFAULT_TOKENS_PER_IMAGE,
    cost_per_token: float = DEFAULT_COST_PER_TOKEN,
) -> CostEstimate:
    estimated_tokens = max(0, int(image_count)) * tokens_per_image
    estimated_cost = math.ceil(round(estimated_tokens * cost_per_token, 6))
    warning = None
    if estimated_cost > _COST_HIGH_WARNING:
        warning = f"Estimated cost of {estimated_cost} is high; consider fewer captures or a longer interval."
    elif estimated_cost > _COST_WARNING:
        warning = f"Estimated cost is {estimated_cost}; keep an eye on usage."
    return CostEstimate(
        image_count=max(0, int(image_count)),
        estimated_tokens=estimated_tokens,
        estimated_cost=estimated_cost,
        warning=warning,
    )
