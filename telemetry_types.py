#!/usr/bin/env python3
"""
🐧 Device Performance Telemetry Type Definitions
===============================================
Copyright (c) 2025 PNGN-Tec LLC

Shared type system for performance telemetry. Platform-agnostic enums and
dataclasses used across the collector, recorder and configuration modules.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple
from collections import defaultdict
from enum import Enum, IntEnum
from pathlib import Path

# ============================================================================
# ENUMS
# ============================================================================

class Domain(Enum):
    """Hardware domains grouped and averaged by the collector"""
    CPU = 'cpu'
    GPU = 'gpu'
    NPU = 'npu'
    TPU = 'tpu'
    UNKNOWN = 'unknown'

    @property
    def temperature_field(self) -> str:
        """CSV column carrying this domain's mean temperature"""
        return f"{self.value}Temperature"

class AccessMode(Enum):
    """How sensor queries are executed for the whole run"""
    DIRECT = 'direct'
    ELEVATED = 'elevated'

    @property
    def is_elevated(self) -> bool:
        return self is AccessMode.ELEVATED

class ThermalStatus(IntEnum):
    """Android PowerManager thermal status codes"""
    NONE = 0
    LIGHT = 1
    MODERATE = 2
    SEVERE = 3
    CRITICAL = 4
    EMERGENCY = 5
    SHUTDOWN = 6

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def label_for(cls, code) -> str:
        """Display label for a raw status code, 'Unknown' when unrecognised"""
        try:
            return cls(int(code)).label
        except (TypeError, ValueError):
            return THERMAL_STATUS_UNKNOWN

THERMAL_STATUS_UNKNOWN = 'Unknown'

# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class SensorPath:
    """A discovered sensor directory and the domain it reports for"""
    domain: Domain
    path: str

@dataclass(frozen=True)
class SensorInventory:
    """
    Everything discovered once at startup.

    Attributes:
        access_mode: Execution mode chosen by the capability probe
        thermal_zones: Classified thermal zone directories in the interest set
        cpu_devices: Per-core cpu<N> directories used for frequency sampling
    """
    access_mode: AccessMode
    thermal_zones: Tuple[SensorPath, ...] = ()
    cpu_devices: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.thermal_zones and not self.cpu_devices

@dataclass(frozen=True)
class RawReading:
    """Result of one sensor query; value is None when nothing usable was read"""
    sensor_path: Optional[SensorPath]
    value: Optional[float] = None

    @property
    def valid(self) -> bool:
        return self.value is not None

@dataclass
class AggregatedSample:
    """
    One cycle's worth of telemetry, the unit of persistence.

    Attributes:
        timestamp: Unix timestamp of the cycle
        thermal_status: Externally supplied thermal status label
        domain_temperatures: Mean °C per domain, only domains with readings
        cpu_frequency_mhz: Mean current frequency across CPU cores
        gpu_frequency_mhz: Current GPU frequency
        cpu_utilization: CPU percentage used by the host process
        gpu_utilization: GPU busy percentage
    """
    timestamp: float
    thermal_status: str
    domain_temperatures: Dict[Domain, float] = field(default_factory=dict)
    cpu_frequency_mhz: Optional[float] = None
    gpu_frequency_mhz: Optional[float] = None
    cpu_utilization: Optional[float] = None
    gpu_utilization: Optional[float] = None

@dataclass(frozen=True)
class ThroughputReport:
    """Inference throughput snapshot handed over by the inference subsystem"""
    model: str
    delegate: str
    throughput: int         # inferences completed in the last window
    period: int             # task period in ms

@dataclass
class TelemetrySession:
    """Mutable per-session state threaded through every cycle"""
    log_path: Path
    started_at: float
    header_written: bool = False          # rows are held back until True
    cycles_written: int = 0
    cycles_dropped: int = 0
    last_sample: Optional[AggregatedSample] = None
    read_failures: Dict[str, int] = field(default_factory=lambda: defaultdict(int))

# ============================================================================
# EXPORT ALL PUBLIC TYPES
# ============================================================================

__all__ = [
    # Enums
    'Domain',
    'AccessMode',
    'ThermalStatus',
    'THERMAL_STATUS_UNKNOWN',

    # Data structures
    'SensorPath',
    'SensorInventory',
    'RawReading',
    'AggregatedSample',
    'ThroughputReport',
    'TelemetrySession',
]
