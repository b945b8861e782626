#!/usr/bin/env python3
"""
🔥🐧🔥 Device Performance Telemetry Collector
==========================================
Copyright (c) 2025 PNGN-Tec LLC

Periodic thermal, frequency and utilization telemetry for Android devices,
persisted as an append-only CSV time series for later analysis.

ARCHITECTURE:
- Access probe: one-shot `su -c id` decides Direct vs Elevated for the run
- Sensor sources: direct sysfs reads, or every query behind `su -c`
- Discovery: thermal_zone<N> classified by its `type` string, cpu<N> cores
- Reader: first-line reads with unit conversion, None on any failure
- Aggregator: per-domain mean (numpy), domains without readings omitted
- Recorder: header once per session file, one open/write/close per row
- Scheduler: single asyncio task, fixed nominal rate, no overlapping cycles

HARDWARE SURFACES:
- /sys/class/thermal/thermal_zone*/{type,temp}         (milli-°C)
- /sys/devices/system/cpu/cpu*/cpufreq/scaling_cur_freq (kHz)
- /sys/class/kgsl/kgsl-3d0/{clock_mhz,gpu_busy_percentage}  (Adreno)
- /sys/class/misc/mali0/device/{cur_freq,utilization}       (Mali)
- `top -b -n 1` for the host process CPU share

OUTPUT:
time,thermalStatus,cpuTemperature,gpuTemperature,npuTemperature,
cpuFrequency,gpuFrequency,cpuUtilization,gpuUtilization

Missing data is an empty field, never 0 or -1.
"""

import io
import os
import re
import csv
import math
import time
import shlex
import asyncio
import logging
import traceback
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import (
    Dict, List, Optional, Callable, Any, Iterable, Sequence, Union, Awaitable, Mapping, Tuple,
)

import numpy as np

from telemetry_types import (
    Domain, AccessMode, ThermalStatus, THERMAL_STATUS_UNKNOWN,
    SensorPath, SensorInventory, RawReading, AggregatedSample,
    ThroughputReport, TelemetrySession,
)
from telemetry_config import (
    CollectorConfig,
    TELEMETRY_COMMAND_TIMEOUT, ACCESS_PROBE_TIMEOUT,
    ELEVATION_PREFIX, ELEVATION_PROBE_COMMAND,
    THERMAL_ZONE_PATTERN, CPU_DEVICE_PATTERN,
    THERMAL_TYPE_FILE, THERMAL_TEMP_FILE, CPU_FREQUENCY_FILE,
    PROCESS_CPU_FIELD_FROM_END, THERMAL_SERVICE_COMMAND,
    LOG_FILE_TIME_FORMAT, ROW_TIME_FORMAT, CSV_DELIMITER,
    MAX_LOGGED_READ_FAILURES,
)

# Configure logging
logger = logging.getLogger('PNGN.PerfTelemetry')

# ============================================================================
# UNIT CONVERSION
# ============================================================================

MILLIDEGREE_TO_DEGREE = 1000.0
KHZ_PER_MHZ = 1000.0
VALUE_DECIMALS = 3

# Stand-in for a process row when `top` shows no matching line
PROCESS_SENTINEL_FIELD = ''

# ============================================================================
# ERRORS
# ============================================================================

class TelemetryError(Exception):
    """Base error for the telemetry collector"""

class CommandError(TelemetryError):
    """A subprocess could not be spawned or did not finish in time"""

class SensorSurfaceUnavailable(TelemetryError):
    """Startup found no usable thermal or CPU sensor paths"""

# ============================================================================
# SUBPROCESS EXECUTION
# ============================================================================

@dataclass
class CommandResult:
    """Exit status and decoded stdout lines of one command"""
    returncode: Optional[int]
    lines: List[str]

async def run_command(argv: Sequence[str], timeout: float = TELEMETRY_COMMAND_TIMEOUT) -> CommandResult:
    """
    Run a command and collect its stdout.

    Non-zero exit is not an error here; callers decide what an exit code
    means. Spawn failures and timeouts raise CommandError.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
    except OSError as e:
        raise CommandError(f"Cannot spawn {argv[0]}: {e}") from e

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise CommandError(f"{argv[0]} timed out after {timeout}s") from e
    finally:
        # Ensure process is cleaned up
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()

    return CommandResult(proc.returncode, stdout.decode(errors='replace').splitlines())

# ============================================================================
# ACCESS STRATEGY
# ============================================================================

async def probe_access_mode(command: Sequence[str] = ELEVATION_PROBE_COMMAND,
                            timeout: float = ACCESS_PROBE_TIMEOUT) -> AccessMode:
    """
    One-shot capability probe for elevated access.

    Exit code 0 means the elevation wrapper works; anything else (missing
    binary, denied, timeout) means Direct. Never retried for the run.
    """
    try:
        result = await run_command(command, timeout=timeout)
    except CommandError as e:
        logger.info(f"Elevated access unavailable ({e}), using direct reads")
        return AccessMode.DIRECT

    if result.returncode == 0:
        logger.info("Elevated access available, sensor queries will use the elevation prefix")
        return AccessMode.ELEVATED

    logger.info(f"Elevation probe exited with {result.returncode}, using direct reads")
    return AccessMode.DIRECT

# ============================================================================
# SENSOR SOURCES
# ============================================================================

class SensorSource:
    """
    Read-only view of the device sensor surface.

    Subclasses implement the three queries the collector needs: list a
    directory, read the first line of a file, run a command.
    """

    access_mode = AccessMode.DIRECT

    def __init__(self, command_timeout: float = TELEMETRY_COMMAND_TIMEOUT):
        self.command_timeout = command_timeout

    async def list_dir(self, path: str) -> List[str]:
        raise NotImplementedError

    async def read_first_line(self, path: str) -> Optional[str]:
        raise NotImplementedError

    async def run(self, argv: Sequence[str]) -> List[str]:
        raise NotImplementedError

class DirectSensorSource(SensorSource):
    """Plain filesystem reads; commands run without a prefix"""

    async def list_dir(self, path: str) -> List[str]:
        try:
            return sorted(os.listdir(path))
        except OSError as e:
            logger.debug(f"Cannot list {path}: {e}")
            return []

    async def read_first_line(self, path: str) -> Optional[str]:
        try:
            with open(path, 'r') as f:
                line = f.readline().strip()
        except (OSError, UnicodeDecodeError) as e:
            logger.debug(f"Cannot read {path}: {e}")
            return None
        return line or None

    async def run(self, argv: Sequence[str]) -> List[str]:
        result = await run_command(argv, timeout=self.command_timeout)
        return result.lines

class ElevatedSensorSource(SensorSource):
    """Every query executed as a shell command behind the elevation prefix"""

    access_mode = AccessMode.ELEVATED

    def __init__(self, prefix: Sequence[str] = ELEVATION_PREFIX,
                 command_timeout: float = TELEMETRY_COMMAND_TIMEOUT):
        super().__init__(command_timeout)
        self.prefix = tuple(prefix)

    def build_command(self, argv: Sequence[str]) -> List[str]:
        # su -c takes the whole command line as a single argument
        return [*self.prefix, shlex.join(argv)]

    async def _exec(self, argv: Sequence[str]) -> List[str]:
        result = await run_command(self.build_command(argv), timeout=self.command_timeout)
        return result.lines

    async def list_dir(self, path: str) -> List[str]:
        try:
            lines = await self._exec(['ls', path])
        except CommandError as e:
            logger.debug(f"Cannot list {path}: {e}")
            return []
        return sorted(line.strip() for line in lines if line.strip())

    async def read_first_line(self, path: str) -> Optional[str]:
        try:
            lines = await self._exec(['cat', path])
        except CommandError as e:
            logger.debug(f"Cannot read {path}: {e}")
            return None
        if not lines:
            return None
        return lines[0].strip() or None

    async def run(self, argv: Sequence[str]) -> List[str]:
        return await self._exec(argv)

def create_sensor_source(mode: AccessMode, config: CollectorConfig) -> SensorSource:
    if mode is AccessMode.ELEVATED:
        return ElevatedSensorSource(config.elevation_prefix, config.command_timeout_s)
    return DirectSensorSource(config.command_timeout_s)

# ============================================================================
# PATH DISCOVERY
# ============================================================================

DomainRuleTable = Union[Mapping[Domain, Iterable[str]], Iterable[Tuple[Domain, Iterable[str]]]]

def classify_zone_type(zone_type: str, rules: DomainRuleTable) -> Domain:
    """
    Map a freeform thermal zone type string to a Domain (first rule wins).
    Rules are (domain, needles) pairs or a mapping of domain to needles.
    """
    lowered = zone_type.lower()
    pairs = rules.items() if isinstance(rules, Mapping) else rules
    for domain, needles in pairs:
        if any(needle.lower() in lowered for needle in needles):
            return domain
    return Domain.UNKNOWN

async def _indexed_children(source: SensorSource, root: str, pattern: str) -> List[str]:
    """Children of root matching pattern, ordered by their numeric suffix"""
    regex = re.compile(pattern)
    indexed = []
    for name in await source.list_dir(root):
        match = regex.match(name.strip())
        if match:
            indexed.append((int(match.group(1)), name.strip()))
    return [name for _, name in sorted(indexed)]

async def discover_thermal_zones(source: SensorSource,
                                 root: str,
                                 domains: Iterable[Domain],
                                 rules: DomainRuleTable) -> List[SensorPath]:
    """
    Classify thermal_zone<N> directories under root.

    Zones whose type cannot be read, or whose domain is outside the
    interest set, are dropped. Never raises.
    """
    interest = set(domains)
    zones = []
    for name in await _indexed_children(source, root, THERMAL_ZONE_PATTERN):
        zone_dir = os.path.join(root, name)
        zone_type = await source.read_first_line(os.path.join(zone_dir, THERMAL_TYPE_FILE))
        if zone_type is None:
            logger.debug(f"Dropping {zone_dir}: type unreadable")
            continue

        domain = classify_zone_type(zone_type, rules)
        if domain in interest:
            zones.append(SensorPath(domain=domain, path=zone_dir))

    logger.info(f"Discovered {len(zones)} thermal zones of interest under {root}")
    return zones

async def discover_cpu_devices(source: SensorSource, root: str) -> List[str]:
    """Every cpu<N> directory under root, no type filter"""
    devices = [os.path.join(root, name)
               for name in await _indexed_children(source, root, CPU_DEVICE_PATTERN)]
    logger.info(f"Discovered {len(devices)} CPU devices under {root}")
    return devices

async def discover_inventory(source: SensorSource, config: CollectorConfig) -> SensorInventory:
    zones = await discover_thermal_zones(
        source, config.thermal_root, config.interest_domains, config.domain_rules)
    cpus = await discover_cpu_devices(source, config.cpu_root)
    return SensorInventory(
        access_mode=source.access_mode,
        thermal_zones=tuple(zones),
        cpu_devices=tuple(cpus)
    )

# ============================================================================
# PARSING
# ============================================================================

def parse_number(text: Optional[str]) -> Optional[float]:
    """Finite float from text, None for anything else"""
    if text is None:
        return None
    try:
        value = float(text.strip())
    except ValueError:
        return None
    return value if math.isfinite(value) else None

def millidegrees_to_celsius(raw: float) -> float:
    # Negative raw readings are sensor glitches, clamp before converting
    return max(raw, 0.0) / MILLIDEGREE_TO_DEGREE

def khz_to_mhz(raw: float) -> float:
    return raw / KHZ_PER_MHZ

def parse_percentage(line: Optional[str]) -> Optional[float]:
    """'23%idle' / '23 %' / '23' → 23.0"""
    if line is None:
        return None
    return parse_number(line.split('%')[0])

def _names_process(line: str, match: str) -> bool:
    fields = line.split()
    if not fields:
        return False
    if match.isdigit():
        return fields[0] == match       # PID column
    return match in line

def parse_process_cpu(lines: Iterable[str],
                      match: str,
                      field_from_end: int = PROCESS_CPU_FIELD_FROM_END) -> Optional[float]:
    """
    Host process CPU% from process listing output.

    The first line naming the process is whitespace-normalised and split;
    %CPU is field_from_end fields before the end (…, %CPU, %MEM, TIME+, ARGS).
    """
    row = next((line for line in lines if _names_process(line, match)), None)
    if row is None:
        fields = [PROCESS_SENTINEL_FIELD] * field_from_end
    else:
        fields = ' '.join(row.split()).split(' ')

    if len(fields) < field_from_end:
        return None
    return parse_number(fields[-field_from_end].rstrip('%'))

# ============================================================================
# DOMAIN READER
# ============================================================================

class DomainReader:
    """Reads single values from the sensor surface, never raising"""

    def __init__(self, source: SensorSource):
        self.source = source

    async def read_numeric(self,
                           path: str,
                           file_name: str,
                           convert: Callable[[float], float],
                           sensor_path: Optional[SensorPath] = None) -> RawReading:
        line = await self.source.read_first_line(os.path.join(path, file_name))
        value = parse_number(line)
        if value is not None:
            value = convert(value)
        return RawReading(sensor_path=sensor_path, value=value)

    async def read_percentage(self, path: str, file_name: str) -> RawReading:
        line = await self.source.read_first_line(os.path.join(path, file_name))
        return RawReading(sensor_path=None, value=parse_percentage(line))

    async def read_process_cpu(self, command: Sequence[str], match: str) -> RawReading:
        try:
            lines = await self.source.run(command)
        except CommandError as e:
            logger.debug(f"Process listing failed: {e}")
            lines = []
        return RawReading(sensor_path=None, value=parse_process_cpu(lines, match))

# ============================================================================
# AGGREGATOR
# ============================================================================

def mean_or_missing(values: Iterable[Optional[float]]) -> Optional[float]:
    """Arithmetic mean of the values that are present; None if there are none"""
    valid = np.fromiter((v for v in values if v is not None), dtype=np.float64)
    if valid.size == 0:
        return None
    return float(valid.mean())

def aggregate_domain_temperatures(readings: Iterable[RawReading],
                                  domains: Sequence[Domain]) -> Dict[Domain, float]:
    """Mean temperature per interest domain, in domain order, empty domains omitted"""
    grouped: Dict[Domain, List[float]] = defaultdict(list)
    for reading in readings:
        if reading.valid and reading.sensor_path is not None:
            grouped[reading.sensor_path.domain].append(reading.value)

    result = {}
    for domain in domains:
        mean = mean_or_missing(grouped.get(domain, ()))
        if mean is not None:
            result[domain] = mean
    return result

# ============================================================================
# SAMPLER
# ============================================================================

class Sampler:
    """One collection cycle over a fixed inventory"""

    def __init__(self, config: CollectorConfig, inventory: SensorInventory, reader: DomainReader):
        self.config = config
        self.inventory = inventory
        self.reader = reader

    def _track(self, session: Optional[TelemetrySession], key: str, reading: RawReading):
        if session is None:
            return
        if reading.valid:
            session.read_failures[key] = 0
            return
        session.read_failures[key] += 1
        count = session.read_failures[key]
        if count <= MAX_LOGGED_READ_FAILURES:
            logger.debug(f"No reading from {key} ({count} consecutive)")

    async def collect_cycle(self,
                            thermal_status: str,
                            session: Optional[TelemetrySession] = None) -> AggregatedSample:
        timestamp = time.time()

        # Temperatures
        temperatures = []
        for sensor_path in self.inventory.thermal_zones:
            reading = await self.reader.read_numeric(
                sensor_path.path, THERMAL_TEMP_FILE, millidegrees_to_celsius, sensor_path)
            self._track(session, os.path.join(sensor_path.path, THERMAL_TEMP_FILE), reading)
            temperatures.append(reading)

        # Frequencies
        cpu_frequencies = []
        for cpu_dir in self.inventory.cpu_devices:
            reading = await self.reader.read_numeric(cpu_dir, CPU_FREQUENCY_FILE, khz_to_mhz)
            self._track(session, os.path.join(cpu_dir, CPU_FREQUENCY_FILE), reading)
            cpu_frequencies.append(reading.value)

        gpu = self.config.gpu_profile
        gpu_frequency = await self.reader.read_numeric(
            gpu.device_dir, gpu.frequency_file, lambda raw: raw / gpu.frequency_divisor)
        self._track(session, os.path.join(gpu.device_dir, gpu.frequency_file), gpu_frequency)

        # Utilization
        cpu_utilization = await self.reader.read_process_cpu(
            self.config.process_list_command, self.config.process_match)
        self._track(session, 'process-cpu', cpu_utilization)

        gpu_utilization = await self.reader.read_percentage(gpu.device_dir, gpu.utilization_file)
        self._track(session, os.path.join(gpu.device_dir, gpu.utilization_file), gpu_utilization)

        return AggregatedSample(
            timestamp=timestamp,
            thermal_status=thermal_status,
            domain_temperatures=aggregate_domain_temperatures(
                temperatures, self.config.interest_domains),
            cpu_frequency_mhz=mean_or_missing(cpu_frequencies),
            gpu_frequency_mhz=gpu_frequency.value,
            cpu_utilization=cpu_utilization.value,
            gpu_utilization=gpu_utilization.value
        )

# ============================================================================
# ROW ENCODING
# ============================================================================

def format_row_time(timestamp: float) -> str:
    """HH:MM:SS:mmm"""
    moment = datetime.fromtimestamp(timestamp)
    return f"{moment.strftime(ROW_TIME_FORMAT)}:{moment.microsecond // 1000:03d}"

def format_value(value: Optional[float]) -> str:
    if value is None:
        return ''
    return str(round(float(value), VALUE_DECIMALS))

def performance_header(domains: Sequence[Domain]) -> List[str]:
    return (['time', 'thermalStatus']
            + [domain.temperature_field for domain in domains]
            + ['cpuFrequency', 'gpuFrequency', 'cpuUtilization', 'gpuUtilization'])

def sample_to_row(sample: AggregatedSample, domains: Sequence[Domain]) -> List[str]:
    """Row aligned with performance_header(domains)"""
    return ([format_row_time(sample.timestamp), sample.thermal_status]
            + [format_value(sample.domain_temperatures.get(domain)) for domain in domains]
            + [format_value(sample.cpu_frequency_mhz),
               format_value(sample.gpu_frequency_mhz),
               format_value(sample.cpu_utilization),
               format_value(sample.gpu_utilization)])

THROUGHPUT_HEADER = ['time', 'model', 'delegate', 'throughput', 'period']

def throughput_to_row(report: ThroughputReport, timestamp: float) -> List[str]:
    return [format_row_time(timestamp), report.model, report.delegate,
            str(report.throughput), str(report.period)]

# ============================================================================
# RECORDER
# ============================================================================

def session_log_path(base_dir: Union[str, Path],
                     metric_name: str,
                     now: Optional[datetime] = None,
                     time_format: str = LOG_FILE_TIME_FORMAT) -> Path:
    """
    <base>/<metric>_<HH:MM:SS>.csv, suffixed -1, -2, ... if already taken,
    so a new session never reopens an old file.
    """
    base = Path(base_dir)
    stamp = (now or datetime.now()).strftime(time_format)
    candidate = base / f"{metric_name}_{stamp}.csv"
    suffix = 1
    while candidate.exists():
        candidate = base / f"{metric_name}_{stamp}-{suffix}.csv"
        suffix += 1
    return candidate

class CsvRecorder:
    """
    Append-only CSV writer.

    The file is opened, written once and closed on every call, so each row
    is on disk before the call returns and no handle outlives a cycle.
    """

    def __init__(self, delimiter: str = CSV_DELIMITER):
        self.delimiter = delimiter

    def encode(self, values: Sequence[Any]) -> str:
        buffer = io.StringIO()
        csv.writer(buffer, delimiter=self.delimiter, lineterminator='\n').writerow(values)
        return buffer.getvalue()

    def ensure_header(self, path: Union[str, Path], fields: Sequence[str]) -> bool:
        """Create the file with its header; an existing file is left untouched"""
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create {path.parent}: {e}")
            return False

        try:
            with open(path, 'x', newline='') as f:
                f.write(self.encode(fields))
        except FileExistsError:
            logger.debug(f"{path.name} already exists, header not rewritten")
            return False
        except OSError as e:
            logger.error(f"Failed to create {path}: {e}")
            return False

        logger.info(f"Creating {path.name} done")
        return True

    def append_row(self, path: Union[str, Path], values: Sequence[Any]) -> bool:
        """
        Append one row to a file that ensure_header() created.

        A missing file is a failure, not a new file, so no row can land
        ahead of the header. I/O failures drop the row and return False.
        """
        line = self.encode(values)
        try:
            fd = os.open(path, os.O_WRONLY | os.O_APPEND)
            with os.fdopen(fd, 'w', newline='') as f:
                f.write(line)
        except OSError as e:
            logger.error(f"Failed to append to {path}: {e}")
            return False
        return True

# ============================================================================
# SCHEDULER
# ============================================================================

class PeriodicScheduler:
    """
    Fixed-rate driver for an async tick.

    One asyncio task; a tick is awaited before the next one is considered,
    so cycles never overlap. Ticks missed while a cycle overran are skipped,
    the late tick fires once immediately.
    """

    def __init__(self, period_s: float, on_tick: Callable[[], Awaitable[Any]], name: str = 'telemetry'):
        if period_s <= 0:
            raise ValueError("period_s must be positive")
        self.period = period_s
        self.on_tick = on_tick
        self.name = name

        self.task: Optional[asyncio.Task] = None
        self.running = False
        self.ticks = 0
        self.skipped_ticks = 0
        self.tick_errors = 0
        self._next_fire = 0.0
        self._tick_lock: Optional[asyncio.Lock] = None

    @property
    def is_running(self) -> bool:
        return self.running and self.task is not None and not self.task.done()

    async def start(self):
        """Start ticking; the first tick fires immediately"""
        if self.is_running:
            return

        self.running = True
        self._next_fire = asyncio.get_running_loop().time()
        self.task = asyncio.create_task(self._loop())
        logger.info(f"{self.name} scheduler started ({self.period:.3f}s period)")

    async def stop(self):
        """Cancel the loop; an in-flight tick is abandoned at its next await"""
        self.running = False

        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None

        logger.info(f"{self.name} scheduler stopped after {self.ticks} ticks")

    async def tick_now(self) -> Any:
        """
        Run one tick in the caller's context.

        Manual and scheduled ticks share one lock, so a tick requested while
        the loop is mid-cycle waits for that cycle to finish.
        """
        if self._tick_lock is None:
            self._tick_lock = asyncio.Lock()
        async with self._tick_lock:
            self.ticks += 1
            return await self.on_tick()

    def _advance(self, now: float) -> float:
        """Move to the next slot on the fixed grid and return the delay until it"""
        self._next_fire += self.period
        if now > self._next_fire:
            missed = int((now - self._next_fire) // self.period)
            if missed:
                self.skipped_ticks += missed
                self._next_fire += missed * self.period
        return max(0.0, self._next_fire - now)

    async def _loop(self):
        loop = asyncio.get_running_loop()

        while self.running:
            try:
                try:
                    await self.tick_now()
                except Exception as e:
                    self.tick_errors += 1
                    logger.error(f"{self.name} tick error: {e}")
                    logger.debug(f"{self.name} tick traceback:\n{traceback.format_exc()}")

                await asyncio.sleep(self._advance(loop.time()))

            except asyncio.CancelledError:
                break

# ============================================================================
# THERMAL STATUS
# ============================================================================

THERMAL_STATUS_LINE = re.compile(r'Thermal Status:\s*(-?\d+)')

ThermalStatusProvider = Callable[[], Union[str, Awaitable[str]]]

class ThermalStatusTracker:
    """
    Push-style thermal status holder.

    Wire on_thermal_status_changed() to the platform listener; the collector
    calls the tracker each cycle to read the latest label.

    Starts at 'Unknown' rather than 'None' until the listener first reports.
    'None' is the label for status code 0 (no throttling), so starting there
    would record an unthrottled device before anything was observed.
    """

    def __init__(self, initial: str = THERMAL_STATUS_UNKNOWN):
        self.current = initial
        self.code: Optional[int] = None

    def on_thermal_status_changed(self, code: int):
        self.code = code
        self.current = ThermalStatus.label_for(code)
        logger.info(f"Thermal Status: {code} ({self.current})")

    def __call__(self) -> str:
        return self.current

def parse_thermal_status(lines: Iterable[str]) -> str:
    for line in lines:
        match = THERMAL_STATUS_LINE.search(line)
        if match:
            return ThermalStatus.label_for(match.group(1))
    return THERMAL_STATUS_UNKNOWN

class ThermalServicePoller:
    """Polls `dumpsys thermalservice` for the current status each cycle"""

    def __init__(self, source: SensorSource, command: Sequence[str] = THERMAL_SERVICE_COMMAND):
        self.source = source
        self.command = tuple(command)

    async def __call__(self) -> str:
        try:
            lines = await self.source.run(self.command)
        except CommandError as e:
            logger.debug(f"Thermal service poll failed: {e}")
            return THERMAL_STATUS_UNKNOWN
        return parse_thermal_status(lines)

async def resolve_thermal_status(provider: Union[str, ThermalStatusProvider, None]) -> str:
    """Current status from a string, sync or async provider; 'Unknown' on failure"""
    if provider is None:
        return THERMAL_STATUS_UNKNOWN
    if isinstance(provider, str):
        return provider
    try:
        status = provider()
        if asyncio.iscoroutine(status):
            status = await status
    except Exception as e:
        logger.debug(f"Thermal status provider failed: {e}")
        return THERMAL_STATUS_UNKNOWN
    return str(status) if status is not None else THERMAL_STATUS_UNKNOWN

# ============================================================================
# PERFORMANCE COLLECTOR
# ============================================================================

class PerformanceCollector:
    """
    Main telemetry coordinator.
    Samples the discovered inventory every period and appends one CSV row.
    """

    def __init__(self,
                 config: CollectorConfig,
                 inventory: SensorInventory,
                 source: SensorSource,
                 thermal_status: Union[str, ThermalStatusProvider, None] = None,
                 recorder: Optional[CsvRecorder] = None):
        self.config = config
        self.inventory = inventory
        self.source = source
        self.thermal_status = thermal_status if thermal_status is not None else ThermalStatusTracker()
        self.recorder = recorder or CsvRecorder()

        self.reader = DomainReader(source)
        self.sampler = Sampler(config, inventory, self.reader)
        self.header = performance_header(config.interest_domains)

        self.session: Optional[TelemetrySession] = None
        self.scheduler = PeriodicScheduler(config.sample_period_s, self._run_cycle, name='performance')

        # Callback mechanism for piggybacking on the collection cycle
        self.cycle_callbacks: List[Callable] = []

        logger.info(f"Performance collector ready: {len(inventory.thermal_zones)} zones, "
                    f"{len(inventory.cpu_devices)} CPUs, {inventory.access_mode.value} access, "
                    f"GPU profile {config.gpu_profile.name}")

    @property
    def running(self) -> bool:
        return self.scheduler.is_running

    def open_session(self, now: Optional[datetime] = None) -> TelemetrySession:
        """Fresh log file with its header; every session gets a new path"""
        path = session_log_path(self.config.base_directory,
                                self.config.performance_metric_name,
                                now=now,
                                time_format=self.config.file_time_format)
        self.session = TelemetrySession(log_path=path, started_at=time.time())
        self.session.header_written = self.recorder.ensure_header(path, self.header)
        if not self.session.header_written:
            logger.warning(f"Header for {path.name} not written, retrying next cycle")
        return self.session

    async def start(self):
        """Start a new session and periodic collection"""
        if self.running:
            return
        self.open_session()
        await self.scheduler.start()
        logger.info(f"Performance collection started → {self.session.log_path}")

    async def stop(self):
        """Stop periodic collection"""
        await self.scheduler.stop()
        if self.session:
            logger.info(f"Performance collection stopped: {self.session.cycles_written} rows written, "
                        f"{self.session.cycles_dropped} dropped")

    async def tick_now(self) -> AggregatedSample:
        """Run one full collect-and-record cycle, serialized with scheduled ones"""
        return await self.scheduler.tick_now()

    def _header_ready(self, session: TelemetrySession) -> bool:
        if not session.header_written:
            session.header_written = self.recorder.ensure_header(session.log_path, self.header)
        return session.header_written

    async def _run_cycle(self) -> AggregatedSample:
        session = self.session or self.open_session()

        status = await resolve_thermal_status(self.thermal_status)
        sample = await self.sampler.collect_cycle(status, session)

        row = sample_to_row(sample, self.config.interest_domains)
        if self._header_ready(session) and self.recorder.append_row(session.log_path, row):
            session.cycles_written += 1
        else:
            session.cycles_dropped += 1
        session.last_sample = sample

        await self._invoke_callbacks(sample)
        return sample

    def register_cycle_callback(self, callback: Callable):
        """
        Register a callback invoked with each AggregatedSample after it is
        recorded. Sync and async callables are both accepted.
        """
        if callback not in self.cycle_callbacks:
            self.cycle_callbacks.append(callback)

    def unregister_cycle_callback(self, callback: Callable):
        if callback in self.cycle_callbacks:
            self.cycle_callbacks.remove(callback)

    def clear_cycle_callbacks(self):
        self.cycle_callbacks.clear()

    async def _invoke_callbacks(self, sample: AggregatedSample):
        for callback in self.cycle_callbacks[:]:
            try:
                result = callback(sample)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Cycle callback error in {callback}: {e}")

    def get_current(self) -> Optional[AggregatedSample]:
        return self.session.last_sample if self.session else None

    def get_statistics(self) -> Dict[str, Any]:
        session = self.session
        return {
            'running': self.running,
            'log_path': str(session.log_path) if session else None,
            'cycles_written': session.cycles_written if session else 0,
            'cycles_dropped': session.cycles_dropped if session else 0,
            'ticks': self.scheduler.ticks,
            'skipped_ticks': self.scheduler.skipped_ticks,
            'tick_errors': self.scheduler.tick_errors,
            'thermal_zones': len(self.inventory.thermal_zones),
            'cpu_devices': len(self.inventory.cpu_devices),
            'access_mode': self.inventory.access_mode.value,
        }

# ============================================================================
# THROUGHPUT COLLECTOR
# ============================================================================

ThroughputSource = Callable[[], Optional[ThroughputReport]]

class ThroughputCollector:
    """
    Sibling recorder for inference throughput.
    Writes time,model,delegate,throughput,period to its own session file.
    """

    def __init__(self,
                 config: CollectorConfig,
                 report_source: ThroughputSource,
                 recorder: Optional[CsvRecorder] = None):
        self.config = config
        self.report_source = report_source
        self.recorder = recorder or CsvRecorder()
        self.log_path: Optional[Path] = None
        self.header_written = False
        self.rows_written = 0
        self.rows_dropped = 0
        self.scheduler = PeriodicScheduler(config.throughput_period_s, self._run_cycle, name='throughput')

    def open_session(self, now: Optional[datetime] = None) -> Path:
        self.log_path = session_log_path(self.config.base_directory,
                                         self.config.throughput_metric_name,
                                         now=now,
                                         time_format=self.config.file_time_format)
        self.header_written = self.recorder.ensure_header(self.log_path, THROUGHPUT_HEADER)
        self.rows_written = 0
        self.rows_dropped = 0
        return self.log_path

    async def start(self):
        if self.scheduler.is_running:
            return
        self.open_session()
        await self.scheduler.start()

    async def stop(self):
        await self.scheduler.stop()

    async def tick_now(self) -> Optional[ThroughputReport]:
        return await self.scheduler.tick_now()

    async def _run_cycle(self) -> Optional[ThroughputReport]:
        path = self.log_path or self.open_session()
        report = self.report_source()
        if report is None:
            return None

        if not self.header_written:
            self.header_written = self.recorder.ensure_header(path, THROUGHPUT_HEADER)
        if self.header_written and self.recorder.append_row(path, throughput_to_row(report, time.time())):
            self.rows_written += 1
        else:
            self.rows_dropped += 1
        return report

# ============================================================================
# FACTORY
# ============================================================================

async def create_performance_collector(
        config: Optional[CollectorConfig] = None,
        thermal_status: Union[str, ThermalStatusProvider, None] = None,
        source: Optional[SensorSource] = None) -> PerformanceCollector:
    """
    Probe access, discover sensors and build a collector.

    Raises:
        SensorSurfaceUnavailable: nothing usable was discovered and
            config.require_sensors is set
    """
    config = config or CollectorConfig()

    if source is None:
        mode = config.access_mode or await probe_access_mode(config.probe_command, config.probe_timeout_s)
        source = create_sensor_source(mode, config)

    inventory = await discover_inventory(source, config)
    if inventory.is_empty and config.require_sensors:
        raise SensorSurfaceUnavailable(
            f"No thermal zones under {config.thermal_root} and no CPUs under {config.cpu_root} "
            f"({source.access_mode.value} access)")

    return PerformanceCollector(config, inventory, source, thermal_status=thermal_status)

def create_throughput_collector(config: Optional[CollectorConfig],
                                report_source: ThroughputSource) -> ThroughputCollector:
    return ThroughputCollector(config or CollectorConfig(), report_source)

# ============================================================================
# MODULE INITIALIZATION
# ============================================================================

logger.info("Device performance telemetry loaded")
