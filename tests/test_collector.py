import asyncio
import csv

import pytest

from perf_telemetry import (
    PerformanceCollector, ElevatedSensorSource, DirectSensorSource, CommandResult,
    ThermalStatusTracker, SensorSurfaceUnavailable, create_performance_collector,
    discover_inventory,
)
import perf_telemetry
from telemetry_config import CollectorConfig, MALI_GPU
from telemetry_types import Domain, AccessMode

from conftest import FakeSensorSource


def read_rows(path):
    with open(path, newline='') as f:
        return list(csv.DictReader(f))


def build_collector(source, tmp_path, **overrides):
    config = CollectorConfig(base_directory=tmp_path, process_match='org.tensorflow', **overrides)
    inventory = asyncio.run(discover_inventory(source, config))
    return PerformanceCollector(config, inventory, source, thermal_status='None')


def test_end_to_end_cycle_without_npu(fake_device, tmp_path):
    collector = build_collector(fake_device, tmp_path, interest_domains=(Domain.CPU, Domain.GPU))

    sample = asyncio.run(collector.tick_now())

    assert sample.domain_temperatures == {Domain.CPU: 40.0, Domain.GPU: 50.0}
    assert sample.cpu_frequency_mhz == pytest.approx(2100.0)
    assert sample.gpu_frequency_mhz == pytest.approx(585.0)
    assert sample.cpu_utilization == pytest.approx(38.4)
    assert sample.gpu_utilization == pytest.approx(23.0)

    rows = read_rows(collector.session.log_path)
    assert len(rows) == 1
    row = rows[0]
    assert 'npuTemperature' not in row
    assert row['thermalStatus'] == 'None'
    assert row['cpuTemperature'] == '40.0'
    assert row['gpuTemperature'] == '50.0'
    assert row['cpuFrequency'] == '2100.0'
    assert row['gpuFrequency'] == '585.0'
    assert row['cpuUtilization'] == '38.4'
    assert row['gpuUtilization'] == '23.0'


def test_interest_domain_without_zones_is_an_empty_field(fake_device, tmp_path):
    collector = build_collector(fake_device, tmp_path)

    sample = asyncio.run(collector.tick_now())

    assert Domain.NPU not in sample.domain_temperatures
    row = read_rows(collector.session.log_path)[0]
    assert row['npuTemperature'] == ''
    assert row['cpuTemperature'] == '40.0'


def test_missing_sources_never_break_a_cycle(tmp_path):
    source = FakeSensorSource(files={
        '/sys/class/thermal/thermal_zone0/type': 'cpu-thermal\n',
        '/sys/class/thermal/thermal_zone0/temp': 'not-a-number\n',
        '/sys/devices/system/cpu/cpu0/cpufreq/scaling_cur_freq': '\n',
    })
    collector = build_collector(source, tmp_path)

    samples = [asyncio.run(collector.tick_now()) for _ in range(3)]

    assert all(s.domain_temperatures == {} for s in samples)
    assert all(s.cpu_frequency_mhz is None and s.cpu_utilization is None for s in samples)

    lines = collector.session.log_path.read_text().splitlines()
    assert len(lines) == 4
    widths = {len(line.split(',')) for line in lines}
    assert widths == {len(collector.header)}
    assert collector.session.read_failures['process-cpu'] == 3


def test_gpu_profile_is_configuration(tmp_path):
    source = FakeSensorSource(files={
        '/sys/devices/system/cpu/cpu0/cpufreq/scaling_cur_freq': '1000000\n',
        '/sys/class/misc/mali0/device/cur_freq': '848000\n',
        '/sys/class/misc/mali0/device/utilization': '64\n',
    })
    collector = build_collector(source, tmp_path, gpu_profile=MALI_GPU)

    sample = asyncio.run(collector.tick_now())

    assert sample.gpu_frequency_mhz == pytest.approx(848.0)
    assert sample.gpu_utilization == pytest.approx(64.0)


def test_every_start_opens_a_fresh_session(fake_device, tmp_path):
    collector = build_collector(fake_device, tmp_path, sample_period_s=0.01)

    async def run_twice():
        paths = []
        for _ in range(2):
            await collector.start()
            await asyncio.sleep(0.05)
            await collector.stop()
            paths.append(collector.session.log_path)
        return paths

    first, second = asyncio.run(run_twice())

    assert first != second
    for path in (first, second):
        lines = path.read_text().splitlines()
        assert lines[0].startswith('time,thermalStatus,')
        assert sum(line.startswith('time,') for line in lines) == 1
        assert len(lines) >= 2


def test_cycle_callbacks_receive_samples_and_errors_are_contained(fake_device, tmp_path):
    collector = build_collector(fake_device, tmp_path)
    seen = []

    async def async_callback(sample):
        seen.append(('async', sample.thermal_status))

    def broken(sample):
        raise RuntimeError("boom")

    collector.register_cycle_callback(broken)
    collector.register_cycle_callback(lambda s: seen.append(('sync', s.thermal_status)))
    collector.register_cycle_callback(async_callback)

    asyncio.run(collector.tick_now())

    assert seen == [('sync', 'None'), ('async', 'None')]
    assert collector.get_statistics()['cycles_written'] == 1


def test_thermal_status_tracker_feeds_rows(fake_device, tmp_path):
    config = CollectorConfig(base_directory=tmp_path, process_match='org.tensorflow')
    inventory = asyncio.run(discover_inventory(fake_device, config))
    tracker = ThermalStatusTracker()
    collector = PerformanceCollector(config, inventory, fake_device, thermal_status=tracker)

    first = asyncio.run(collector.tick_now())
    tracker.on_thermal_status_changed(3)
    second = asyncio.run(collector.tick_now())

    assert first.thermal_status == 'Unknown'
    assert second.thermal_status == 'Severe'


def test_failed_writes_are_counted_and_dropped(fake_device, tmp_path):
    collector = build_collector(fake_device, tmp_path)
    session = collector.open_session()
    session.log_path.unlink()
    session.log_path.mkdir()

    asyncio.run(collector.tick_now())

    assert session.cycles_dropped == 1
    assert session.cycles_written == 0
    assert session.last_sample is not None


def test_factory_rejects_empty_sensor_surface(tmp_path):
    with pytest.raises(SensorSurfaceUnavailable):
        asyncio.run(create_performance_collector(
            CollectorConfig(base_directory=tmp_path), source=FakeSensorSource()))


def test_factory_can_allow_empty_surface(tmp_path):
    config = CollectorConfig(base_directory=tmp_path, require_sensors=False)
    collector = asyncio.run(create_performance_collector(config, source=FakeSensorSource()))

    assert collector.inventory.is_empty


def test_factory_forced_direct_mode_uses_filesystem(sysfs_tree, tmp_path):
    thermal, cpu = sysfs_tree
    config = CollectorConfig(base_directory=tmp_path / 'logs',
                             thermal_root=str(thermal),
                             cpu_root=str(cpu),
                             access_mode=AccessMode.DIRECT)

    collector = asyncio.run(create_performance_collector(config))

    assert isinstance(collector.source, DirectSensorSource)
    assert collector.inventory.access_mode is AccessMode.DIRECT
    assert [z.domain for z in collector.inventory.thermal_zones] == [Domain.CPU, Domain.GPU]
    assert len(collector.inventory.cpu_devices) == 3


def test_elevated_mode_prefixes_every_query(monkeypatch, tmp_path):
    issued = []

    async def fake_run_command(argv, timeout=None):
        issued.append(list(argv))
        command = argv[-1]
        if command.startswith('ls /sys/class/thermal'):
            return CommandResult(0, ['thermal_zone0', 'cooling_device0'])
        if command.startswith('ls /sys/devices/system/cpu'):
            return CommandResult(0, ['cpu0', 'cpufreq'])
        if command.endswith('thermal_zone0/type'):
            return CommandResult(0, ['cpuss-0-0'])
        if command.endswith('thermal_zone0/temp'):
            return CommandResult(0, ['41000'])
        return CommandResult(1, [])

    monkeypatch.setattr(perf_telemetry, 'run_command', fake_run_command)

    config = CollectorConfig(base_directory=tmp_path, access_mode=AccessMode.ELEVATED)
    collector = asyncio.run(create_performance_collector(config))
    sample = asyncio.run(collector.tick_now())

    assert isinstance(collector.source, ElevatedSensorSource)
    assert sample.domain_temperatures == {Domain.CPU: 41.0}
    assert issued
    assert all(argv[:2] == ['su', '-c'] and len(argv) == 3 for argv in issued)


def test_rows_wait_for_the_header_after_a_failed_session_start(fake_device, tmp_path):
    logs = tmp_path / 'logs'
    logs.write_text('')
    config = CollectorConfig(base_directory=logs, process_match='org.tensorflow')
    inventory = asyncio.run(discover_inventory(fake_device, config))
    collector = PerformanceCollector(config, inventory, fake_device, thermal_status='None')

    session = collector.open_session()
    assert not session.header_written

    asyncio.run(collector.tick_now())
    assert session.cycles_dropped == 1

    logs.unlink()
    logs.mkdir()
    asyncio.run(collector.tick_now())

    lines = session.log_path.read_text().splitlines()
    assert lines[0] == ','.join(collector.header)
    assert len(lines) == 2
    assert session.cycles_written == 1


def test_manual_tick_waits_for_scheduled_cycle(fake_device, tmp_path):
    config = CollectorConfig(base_directory=tmp_path, process_match='org.tensorflow',
                             sample_period_s=60.0)
    inventory = asyncio.run(discover_inventory(fake_device, config))
    active = 0
    peak = 0

    async def slow_status():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.05)
        active -= 1
        return 'None'

    collector = PerformanceCollector(config, inventory, fake_device, thermal_status=slow_status)

    async def scenario():
        await collector.start()
        await asyncio.sleep(0.01)
        await collector.tick_now()
        await collector.stop()

    asyncio.run(scenario())

    assert peak == 1
    assert collector.session.cycles_written == 2
    assert len(read_rows(collector.session.log_path)) == 2
