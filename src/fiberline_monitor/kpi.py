"""KPI aggregation over the most recent history slice.

The snapshot is recomputed from scratch on every tick. Every ratio has a
defined fallback of 0 so no NaN or infinity ever reaches a broadcast.
"""

import math
import random
from typing import Optional, Sequence

from .models import Equipment, EquipmentStatus, KPISnapshot, ProcessRecord, ProcessStatus

# Placeholder bounds for indicators the line does not measure yet
ENERGY_EFFICIENCY_RANGE = (85.0, 95.0)
YIELD_RATE_RANGE = (92.0, 97.0)


def _finite(value: float) -> float:
    return value if math.isfinite(value) else 0.0


def compute_kpis(
    recent_window: Sequence[ProcessRecord],
    equipment: Sequence[Equipment],
    active_alerts: int,
    rng: Optional[random.Random] = None,
) -> KPISnapshot:
    """Roll up the current roster and the recent process window.

    ``energy_efficiency`` and ``yield_rate`` are bounded random placeholders;
    they are not derived from the data.
    """
    rng = rng or random.Random()

    operational = [unit for unit in equipment if unit.status == EquipmentStatus.OPERATIONAL]
    if operational:
        overall_efficiency = sum(unit.efficiency for unit in operational) / len(operational)
    else:
        overall_efficiency = 0.0
    uptime = len(operational) / len(equipment) * 100 if equipment else 0.0

    window = max(1, len(recent_window))
    normal = sum(1 for record in recent_window if record.status == ProcessStatus.NORMAL)
    quality_rate = normal / window * 100
    if recent_window:
        co2 = sum(record.environmental.co2_emission for record in recent_window) / len(recent_window)
    else:
        co2 = 0.0

    return KPISnapshot(
        overall_efficiency=_finite(overall_efficiency),
        equipment_uptime=_finite(uptime),
        quality_rate=_finite(quality_rate),
        energy_efficiency=rng.uniform(*ENERGY_EFFICIENCY_RANGE),
        yield_rate=rng.uniform(*YIELD_RATE_RANGE),
        co2_emission=_finite(co2),
        active_alerts=active_alerts,
    )
