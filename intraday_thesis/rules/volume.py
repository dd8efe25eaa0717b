from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from intraday_thesis.config import SetupConfig
from intraday_thesis.types import VolumeRegime


@dataclass(frozen=True)
class VolumePolicy:
    regime: VolumeRegime
    confirm_bars_required: int
    allow_one_bar_breakout: bool
    requires_retest: bool
    size_mult: float
    label: str


_NORMAL = VolumePolicy(VolumeRegime.NORMAL, 2, True, False, 1.0, "NORMAL")


def volume_policy(rel_vol: Optional[float], config: Optional[SetupConfig] = None) -> VolumePolicy:
    """Map relative volume to how much confirmation a breakout needs. Unknown volume is NORMAL."""
    cfg = config or SetupConfig()
    if rel_vol is None or not math.isfinite(rel_vol):
        return _NORMAL
    if rel_vol < cfg.rel_vol_thin:
        return VolumePolicy(VolumeRegime.THIN_TAPE, 3, False, True, 0.25, "THIN")
    if rel_vol < cfg.rel_vol_low:
        return VolumePolicy(VolumeRegime.LOW_VOL, 2, False, False, 0.5, "LOW")
    if rel_vol >= cfg.rel_vol_climax:
        return VolumePolicy(VolumeRegime.CLIMAX_VOL, 1, True, False, 1.25, "CLIMAX")
    if rel_vol >= cfg.rel_vol_spike:
        return VolumePolicy(VolumeRegime.VOL_SPIKE, 1, True, False, 1.25, "SPIKE")
    return _NORMAL
