"""Shared fixtures: an in-memory sensor source and sysfs-like trees."""

import os
from typing import Dict, List, Optional, Sequence

import pytest

from perf_telemetry import SensorSource, CommandError
from telemetry_types import AccessMode


class FakeSensorSource(SensorSource):
    """Dictionary-backed sensor surface that records every query"""

    def __init__(self,
                 files: Optional[Dict[str, str]] = None,
                 commands: Optional[Dict[tuple, List[str]]] = None,
                 access_mode: AccessMode = AccessMode.DIRECT):
        super().__init__()
        self.files = dict(files or {})
        self.commands = dict(commands or {})
        self.access_mode = access_mode
        self.calls = []

    async def list_dir(self, path: str) -> List[str]:
        self.calls.append(('ls', path))
        prefix = path.rstrip('/') + '/'
        names = set()
        for file_path in self.files:
            if file_path.startswith(prefix):
                names.add(file_path[len(prefix):].split('/')[0])
        return sorted(names)

    async def read_first_line(self, path: str) -> Optional[str]:
        self.calls.append(('cat', path))
        text = self.files.get(os.path.normpath(path))
        if text is None:
            return None
        lines = text.splitlines()
        return lines[0].strip() if lines and lines[0].strip() else None

    async def run(self, argv: Sequence[str]) -> List[str]:
        self.calls.append(('run', tuple(argv)))
        if tuple(argv) not in self.commands:
            raise CommandError(f"Cannot spawn {argv[0]}")
        return list(self.commands[tuple(argv)])


TOP_OUTPUT = [
    "Tasks: 612 total,   2 running, 610 sleeping,   0 stopped,   0 zombie",
    "  PID USER         PR  NI VIRT  RES  SHR S[%CPU] %MEM     TIME+ ARGS",
    " 4242 u0_a321      10 -10  17G 312M 201M S 38.4   4.1   1:02.33 org.tensorflow.lite.examples.imageclassification",
    "  812 system       18  -2  21G 290M 205M S  9.0   3.8  22:11.07 system_server",
]


@pytest.fixture
def fake_source_factory():
    return FakeSensorSource


@pytest.fixture
def device_files():
    """Thermal zones typed cpu/gpu/battery, two CPUs and an Adreno GPU"""
    return {
        '/sys/class/thermal/thermal_zone0/type': 'cpu-thermal\n',
        '/sys/class/thermal/thermal_zone0/temp': '40000\n',
        '/sys/class/thermal/thermal_zone1/type': 'gpu-thermal\n',
        '/sys/class/thermal/thermal_zone1/temp': '50000\n',
        '/sys/class/thermal/thermal_zone2/type': 'battery-thermal\n',
        '/sys/class/thermal/thermal_zone2/temp': '31000\n',
        '/sys/devices/system/cpu/cpu0/cpufreq/scaling_cur_freq': '1800000\n',
        '/sys/devices/system/cpu/cpu1/cpufreq/scaling_cur_freq': '2400000\n',
        '/sys/devices/system/cpu/cpufreq/policy0': '\n',
        '/sys/class/kgsl/kgsl-3d0/clock_mhz': '585\n',
        '/sys/class/kgsl/kgsl-3d0/gpu_busy_percentage': '23 %\n',
    }


@pytest.fixture
def fake_device(device_files):
    return FakeSensorSource(
        files=device_files,
        commands={('top', '-b', '-n', '1'): TOP_OUTPUT},
    )


def make_tree(root, files: Dict[str, str]):
    """Write {relative path: content} under root"""
    for relative, content in files.items():
        target = root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
    return root


@pytest.fixture
def sysfs_tree(tmp_path):
    """Real on-disk thermal and cpu trees for DirectSensorSource"""
    thermal = make_tree(tmp_path / 'thermal', {
        'thermal_zone0/type': 'cpu-thermal\n',
        'thermal_zone0/temp': '40000\n',
        'thermal_zone1/type': 'gpu-thermal\n',
        'thermal_zone1/temp': '50000\n',
        'thermal_zone2/type': 'battery-thermal\n',
        'thermal_zone2/temp': '31000\n',
        'cooling_device0/type': 'cpufreq-cpu0\n',
    })
    cpu = make_tree(tmp_path / 'cpu', {
        'cpu0/cpufreq/scaling_cur_freq': '1800000\n',
        'cpu1/cpufreq/scaling_cur_freq': '2400000\n',
        'cpu10/cpufreq/scaling_cur_freq': '600000\n',
        'cpufreq/policy0/affected_cpus': '0 1\n',
        'cpuidle/current_driver': 'psci_idle\n',
    })
    return thermal, cpu
