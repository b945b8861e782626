#!/usr/bin/env python3
"""
🔥🐧🔥 Device Performance Telemetry Configuration
=============================================
Copyright (c) 2025 PNGN-Tec LLC

Configuration constants and the immutable CollectorConfig for the device
performance telemetry collector.

Defaults target Android devices in two families:
- Snapdragon / Adreno (e.g. Galaxy Note10+): GPU under /sys/class/kgsl/kgsl-3d0
- Tensor / Mali (e.g. Pixel 8): GPU under /sys/class/misc/mali0/device

To modify: pass a CollectorConfig, or load JSON overrides with
load_collector_config().
"""

import os
import json
import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Optional, Tuple, Any, Mapping

from telemetry_types import Domain, AccessMode

logger = logging.getLogger('PNGN.PerfTelemetry.Config')

# ============================================================================
# SAMPLING CADENCE
# ============================================================================

PERFORMANCE_SAMPLE_PERIOD = 2.0         # seconds between collector cycles
THROUGHPUT_SAMPLE_PERIOD = 1.0          # seconds between throughput rows

# ============================================================================
# TIMEOUTS
# ============================================================================

TELEMETRY_COMMAND_TIMEOUT = 3.0         # seconds per subprocess query
ACCESS_PROBE_TIMEOUT = 3.0              # seconds for the elevation probe

# ============================================================================
# SYSFS LOCATIONS
# ============================================================================

THERMAL_ROOT = '/sys/class/thermal'
CPU_DEVICE_ROOT = '/sys/devices/system/cpu'

THERMAL_ZONE_PATTERN = r'^thermal_zone(\d+)$'
CPU_DEVICE_PATTERN = r'^cpu(\d+)$'

THERMAL_TYPE_FILE = 'type'
THERMAL_TEMP_FILE = 'temp'
CPU_FREQUENCY_FILE = 'cpufreq/scaling_cur_freq'   # kHz

# ============================================================================
# DOMAINS
# ============================================================================

# Interest set fixed per collector; determines the CSV temperature columns
DEFAULT_INTEREST_DOMAINS = (Domain.CPU, Domain.GPU, Domain.NPU)

# Substrings matched case-insensitively against thermal_zone*/type.
# Checked in this order, first match wins (Snapdragon 'cpuss-1-0' → cpu).
DomainRules = Tuple[Tuple[Domain, Tuple[str, ...]], ...]

DEFAULT_DOMAIN_RULES: DomainRules = (
    (Domain.CPU, ('cpu',)),
    (Domain.GPU, ('gpu',)),
    (Domain.NPU, ('npu',)),
    (Domain.TPU, ('tpu',)),
)

def freeze_domain_rules(rules) -> DomainRules:
    """Ordered (domain, needles) pairs from a mapping or an iterable of pairs"""
    pairs = rules.items() if isinstance(rules, Mapping) else rules
    return tuple((Domain(domain), tuple(needles)) for domain, needles in pairs)

# ============================================================================
# ELEVATED ACCESS
# ============================================================================

ELEVATION_PREFIX = ('su', '-c')
ELEVATION_PROBE_COMMAND = ('su', '-c', 'id')

# ============================================================================
# PROCESS & THERMAL SERVICE COMMANDS
# ============================================================================

PROCESS_LIST_COMMAND = ('top', '-b', '-n', '1')
PROCESS_CPU_FIELD_FROM_END = 4          # %CPU sits 4 fields before the end
THERMAL_SERVICE_COMMAND = ('dumpsys', 'thermalservice')

# ============================================================================
# OUTPUT FILES
# ============================================================================

PERFORMANCE_METRIC_NAME = 'Performance_Measurements'
THROUGHPUT_METRIC_NAME = 'Throughput_Measurements'
LOG_FILE_TIME_FORMAT = '%H:%M:%S'       # session suffix in file names
ROW_TIME_FORMAT = '%H:%M:%S'            # milliseconds appended as :SSS
CSV_DELIMITER = ','

# ============================================================================
# FAILURE LOGGING
# ============================================================================

MAX_LOGGED_READ_FAILURES = 3            # debug lines per path before going quiet

# ============================================================================
# GPU PROFILES
# ============================================================================

@dataclass(frozen=True)
class GpuProfile:
    """
    Where a GPU family exposes frequency and utilization.

    Attributes:
        name: Short identifier used in config files
        device_dir: sysfs directory holding both files
        frequency_file: File with the current GPU clock
        frequency_divisor: Divides the raw clock into MHz
        utilization_file: File with busy percentage ("NN%" or "NN")
    """
    name: str
    device_dir: str
    frequency_file: str
    frequency_divisor: float
    utilization_file: str

KGSL_GPU = GpuProfile(
    name='kgsl',
    device_dir='/sys/class/kgsl/kgsl-3d0',
    frequency_file='clock_mhz',          # already MHz
    frequency_divisor=1.0,
    utilization_file='gpu_busy_percentage',
)

MALI_GPU = GpuProfile(
    name='mali',
    device_dir='/sys/class/misc/mali0/device',
    frequency_file='cur_freq',           # kHz
    frequency_divisor=1000.0,
    utilization_file='utilization',
)

GPU_PROFILES = {profile.name: profile for profile in (KGSL_GPU, MALI_GPU)}

# ============================================================================
# COLLECTOR CONFIG
# ============================================================================

def default_base_directory() -> Path:
    return Path(os.environ.get('PERF_TELEMETRY_DIR', '.')).expanduser()

def default_process_match() -> str:
    return str(os.getpid())

@dataclass(frozen=True)
class CollectorConfig:
    """Immutable collector settings, fixed for the lifetime of a collector"""
    interest_domains: Tuple[Domain, ...] = DEFAULT_INTEREST_DOMAINS
    domain_rules: DomainRules = DEFAULT_DOMAIN_RULES
    sample_period_s: float = PERFORMANCE_SAMPLE_PERIOD
    throughput_period_s: float = THROUGHPUT_SAMPLE_PERIOD
    command_timeout_s: float = TELEMETRY_COMMAND_TIMEOUT
    probe_timeout_s: float = ACCESS_PROBE_TIMEOUT
    thermal_root: str = THERMAL_ROOT
    cpu_root: str = CPU_DEVICE_ROOT
    gpu_profile: GpuProfile = KGSL_GPU
    base_directory: Path = field(default_factory=default_base_directory)
    performance_metric_name: str = PERFORMANCE_METRIC_NAME
    throughput_metric_name: str = THROUGHPUT_METRIC_NAME
    file_time_format: str = LOG_FILE_TIME_FORMAT
    process_match: str = field(default_factory=default_process_match)
    process_list_command: Tuple[str, ...] = PROCESS_LIST_COMMAND
    access_mode: Optional[AccessMode] = None     # None = probe at startup
    elevation_prefix: Tuple[str, ...] = ELEVATION_PREFIX
    probe_command: Tuple[str, ...] = ELEVATION_PROBE_COMMAND
    require_sensors: bool = True

    def __post_init__(self):
        # Hashable, ordered rule table whether given as a dict or as pairs
        object.__setattr__(self, 'domain_rules', freeze_domain_rules(self.domain_rules))
        if not self.interest_domains:
            raise ValueError("interest_domains must name at least one domain")
        if Domain.UNKNOWN in self.interest_domains:
            raise ValueError("Domain.UNKNOWN cannot be an interest domain")
        if self.sample_period_s <= 0 or self.throughput_period_s <= 0:
            raise ValueError("sampling periods must be positive")

    def with_overrides(self, **changes) -> 'CollectorConfig':
        return replace(self, **changes)

# ============================================================================
# JSON OVERRIDES
# ============================================================================

def _coerce_override(name: str, value: Any) -> Any:
    """Turn JSON scalars/lists into the types CollectorConfig expects"""
    if name == 'interest_domains':
        return tuple(Domain(str(v).lower()) for v in value)
    if name == 'domain_rules':
        return tuple((Domain(str(k).lower()), tuple(str(s).lower() for s in v))
                     for k, v in value.items())
    if name == 'gpu_profile':
        if isinstance(value, dict):
            return GpuProfile(**value)
        return GPU_PROFILES[str(value).lower()]
    if name == 'access_mode':
        return AccessMode(str(value).lower()) if value is not None else None
    if name == 'base_directory':
        return Path(value).expanduser()
    if name in ('process_list_command', 'elevation_prefix', 'probe_command'):
        return tuple(value)
    return value

def load_collector_config(path, base: Optional[CollectorConfig] = None) -> CollectorConfig:
    """
    Load CollectorConfig overrides from a JSON file.

    Keys are CollectorConfig field names. Domains are given by name
    ("cpu", "gpu", ...), gpu_profile by preset name or as a full mapping.
    Unknown keys are ignored with a warning.

    Args:
        path: JSON file with overrides
        base: Config to start from (defaults to CollectorConfig())

    Returns:
        New CollectorConfig with overrides applied
    """
    base = base or CollectorConfig()
    with open(Path(path).expanduser(), 'r') as f:
        data = json.load(f)

    known = {f.name for f in fields(CollectorConfig)}
    changes = {}
    for name, value in data.items():
        if name not in known:
            logger.warning(f"Ignoring unknown config key: {name}")
            continue
        changes[name] = _coerce_override(name, value)

    config = replace(base, **changes)
    logger.info(f"Loaded collector config from {path} ({len(changes)} overrides)")
    return config
