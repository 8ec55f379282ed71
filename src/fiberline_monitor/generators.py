"""Telemetry synthesis for the carbon-fiber production line.

Produces, on every tick:

- one ``ProcessRecord`` per modelled (process type, stage) pair, each with
  parameters jittered around a stage baseline and an independently drawn
  status label
- zero or one ``Alert`` (10% chance by default)
- a perturbed copy of the equipment roster (efficiency random walk plus
  rare status flips)

All randomness flows through an injectable ``random.Random`` so tests can
pin the output.
"""

import random
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from .config import SimulationConfig
from .models import (
    Alert,
    AlertSeverity,
    AlertType,
    EnvironmentalData,
    Equipment,
    EquipmentStatus,
    ProcessRecord,
    ProcessStatus,
    ProcessType,
    QualityMetrics,
    utcnow,
)


# (baseline, jitter span) pairs; jitter is +/- span * variation
Baseline = Tuple[float, float]


@dataclass(frozen=True)
class StageProfile:
    """Baselines for one (process type, stage) pair."""

    process_type: ProcessType
    stage: str
    parameters: Dict[str, Baseline]
    quality: Dict[str, Baseline] = field(default_factory=dict)
    base_temperature: float = 25.0
    base_pressure: float = 1.0
    max_defects: int = 0


STAGE_PROFILES: Tuple[StageProfile, ...] = (
    StageProfile(
        ProcessType.PAN,
        "polymerization",
        parameters={
            "acrylonitrile_concentration": (45, 5),
            "ma_content": (2.1, 0.3),
            "ia_content": (1.8, 0.2),
            "molecular_weight": (85000, 5000),
            "reaction_temperature": (65, 3),
            "reaction_pressure": (2.5, 0.2),
        },
        quality={
            "tensile_strength": (800, 50),
            "elastic_modulus": (15, 2),
            "diameter": (12.5, 0.5),
        },
        base_temperature=65,
        base_pressure=2.5,
    ),
    StageProfile(
        ProcessType.PAN,
        "spinning",
        parameters={
            "dope_viscosity": (180, 20),
            "dope_concentration": (18.5, 1),
            "spinning_speed": (120, 10),
            "coagulation_bath_temp": (0, 2),
            "draw_ratio": (8.5, 0.5),
        },
        quality={
            "diameter": (12.0, 0.3),
            "circularity": (0.98, 0.02),
        },
        base_temperature=25,
        base_pressure=1.0,
        max_defects=5,
    ),
    StageProfile(
        ProcessType.CARBON_FIBER,
        "stabilization",
        parameters={
            "temperature_profile": (250, 10),
            "oxygen_concentration": (21, 1),
            "tension_control": (2.8, 0.2),
            "residence_time": (90, 5),
        },
        quality={
            "tensile_strength": (1200, 100),
            "elastic_modulus": (85, 5),
        },
        base_temperature=250,
        base_pressure=1.0,
    ),
    StageProfile(
        ProcessType.CARBON_FIBER,
        "carbonization",
        parameters={
            "max_temperature": (1500, 50),
            "heating_rate": (5, 0.5),
            "nitrogen_flow": (50, 5),
            "carbon_content": (94.5, 1),
        },
        quality={
            "tensile_strength": (3500, 300),
            "elastic_modulus": (230, 20),
        },
        base_temperature=1500,
        base_pressure=0.5,
    ),
    StageProfile(
        ProcessType.PREPREG,
        "resin_impregnation",
        parameters={
            "resin_temperature": (80, 5),
            "resin_viscosity": (2000, 200),
            "impregnation_pressure": (0.5, 0.05),
            "resin_content": (35, 2),
        },
        quality={
            "fiber_volume_ratio": (60, 3),
            "void_content": (0.5, 0.3),
        },
        base_temperature=80,
        base_pressure=0.5,
    ),
    StageProfile(
        ProcessType.COMPOSITE,
        "autoclave_curing",
        parameters={
            "cure_temperature": (180, 5),
            "autoclave_pressure": (0.7, 0.05),
            "vacuum_level": (-0.95, 0.02),
            "cure_time": (120, 10),
        },
        quality={
            "tensile_strength": (2800, 200),
            "elastic_modulus": (150, 15),
            "void_content": (0.8, 0.4),
        },
        base_temperature=180,
        base_pressure=0.7,
    ),
    StageProfile(
        ProcessType.COMPOSITE,
        "rtm_injection",
        parameters={
            "mold_temperature": (120, 5),
            "injection_pressure": (6, 0.5),
            "resin_flow_rate": (1.2, 0.1),
            "fill_time": (15, 2),
        },
        quality={
            "fiber_volume_ratio": (55, 3),
            "void_content": (1.0, 0.4),
        },
        base_temperature=120,
        base_pressure=6.0,
        max_defects=3,
    ),
)

# Cumulative thresholds: 70% normal, 20% warning, 8% critical, 2% offline
STATUS_THRESHOLDS: Tuple[Tuple[float, ProcessStatus], ...] = (
    (0.70, ProcessStatus.NORMAL),
    (0.90, ProcessStatus.WARNING),
    (0.98, ProcessStatus.CRITICAL),
)

ALERT_MESSAGES = [
    "Temperature deviation detected in carbonization furnace",
    "Quality metrics below threshold in prepreg line",
    "Equipment efficiency dropping in spinning machine",
    "Environmental emission levels approaching limits",
    "Pressure anomaly in autoclave system",
    "Fiber diameter variation exceeding tolerance",
]

EQUIPMENT_KINDS: Tuple[Tuple[str, str], ...] = (
    ("polymerization_reactor", "Polymerization Reactor"),
    ("spinning_machine", "Spinning Machine"),
    ("stabilization_oven", "Stabilization Oven"),
    ("carbonization_furnace", "Carbonization Furnace"),
    ("surface_treatment", "Surface Treatment Unit"),
    ("resin_impregnation", "Resin Impregnation Line"),
    ("prepreg_line", "Prepreg Production Line"),
    ("autoclave", "Autoclave System"),
    ("rtm_machine", "RTM Machine"),
    ("quality_scanner", "Quality Scanner"),
)


class TelemetrySynthesizer:
    """Generates process records, alerts and equipment drift."""

    def __init__(
        self,
        config: Optional[SimulationConfig] = None,
        rng: Optional[random.Random] = None,
        profiles: Sequence[StageProfile] = STAGE_PROFILES,
    ):
        self.config = config or SimulationConfig()
        self.rng = rng or random.Random(self.config.random_seed)
        self.profiles = tuple(profiles)

    # -------------------------------------------------------------------------
    # Primitives
    # -------------------------------------------------------------------------

    def vary(self, base: float, span: float) -> float:
        """Jitter ``base`` by up to +/- ``span * process_variation``."""
        return base + (self.rng.random() - 0.5) * 2 * span * self.config.process_variation

    def draw_status(self) -> ProcessStatus:
        roll = self.rng.random()
        for threshold, status in STATUS_THRESHOLDS:
            if roll < threshold:
                return status
        return ProcessStatus.OFFLINE

    # -------------------------------------------------------------------------
    # Process data
    # -------------------------------------------------------------------------

    def _environmental(self, base_temperature: float, base_pressure: float) -> EnvironmentalData:
        return EnvironmentalData(
            temperature=self.vary(base_temperature, 5),
            pressure=self.vary(base_pressure, 0.1),
            humidity=self.vary(45, 10),
            co2_emission=self.vary(50, 10),
            energy_consumption=self.vary(100, 20),
            nox_emission=self.vary(0.5, 0.1),
            sox_emission=self.vary(0.3, 0.05),
            particulates=self.vary(10, 2),
            voc_emission=self.vary(2.5, 0.5),
        )

    def generate_record(self, profile: StageProfile, timestamp: datetime) -> ProcessRecord:
        parameters = {
            name: self.vary(base, span) for name, (base, span) in profile.parameters.items()
        }
        quality_values = {
            name: self.vary(base, span) for name, (base, span) in profile.quality.items()
        }
        if profile.max_defects:
            quality_values["defect_count"] = self.rng.randrange(profile.max_defects)

        return ProcessRecord(
            timestamp=timestamp,
            process_type=profile.process_type,
            stage=profile.stage,
            parameters=parameters,
            quality=QualityMetrics(**quality_values),
            environmental=self._environmental(profile.base_temperature, profile.base_pressure),
            status=self.draw_status(),
        )

    def generate_batch(self, timestamp: Optional[datetime] = None) -> List[ProcessRecord]:
        """One record per modelled stage, all sharing the tick timestamp."""
        timestamp = timestamp or utcnow()
        return [self.generate_record(profile, timestamp) for profile in self.profiles]

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    def generate_alert(
        self, roster: Sequence[Equipment], timestamp: Optional[datetime] = None
    ) -> Optional[Alert]:
        if not roster or self.rng.random() >= self.config.alert_probability:
            return None

        return Alert(
            type=self.rng.choice(list(AlertType)),
            severity=self.rng.choice(list(AlertSeverity)),
            message=self.rng.choice(ALERT_MESSAGES),
            source=self.rng.choice(roster).id,
            timestamp=timestamp or utcnow(),
        )

    # -------------------------------------------------------------------------
    # Equipment
    # -------------------------------------------------------------------------

    def create_roster(self, now: Optional[datetime] = None) -> List[Equipment]:
        """Build the fixed equipment roster."""
        now = now or utcnow()
        roster = []
        for index in range(self.config.equipment_count):
            kind, label = EQUIPMENT_KINDS[index % len(EQUIPMENT_KINDS)]
            roster.append(
                Equipment(
                    id=f"EQ-{index + 1:03d}",
                    name=f"{label} {index // len(EQUIPMENT_KINDS) + 1}",
                    type=kind,
                    location=f"Line {index // 3 + 1}",
                    status=(
                        EquipmentStatus.MAINTENANCE
                        if self.rng.random() > 0.9
                        else EquipmentStatus.OPERATIONAL
                    ),
                    efficiency=85 + self.rng.random() * 15,
                    last_maintenance=now - timedelta(days=self.rng.random() * 30),
                    next_maintenance=now + timedelta(days=7 + self.rng.random() * 21),
                )
            )
        return roster

    def perturb_equipment(self, roster: Sequence[Equipment]) -> List[Equipment]:
        """Return the roster after one tick of efficiency walk and status flips.

        Copies are returned so the store can swap the whole roster in at once;
        ids and descriptive fields are carried over unchanged.
        """
        walk = self.config.efficiency_walk
        updated = []
        for unit in roster:
            efficiency = unit.efficiency + (self.rng.random() - 0.5) * 2 * walk
            efficiency = max(0.0, min(100.0, efficiency))
            status = unit.status
            if self.rng.random() < self.config.status_flip_probability:
                status = self.rng.choice(list(EquipmentStatus))
            updated.append(replace(unit, efficiency=efficiency, status=status))
        return updated
