#!/usr/bin/env python3
"""
🔥🐧🔥 Device Performance Telemetry - Usage Example
==============================================
Copyright (c) 2025 PNGN-Tec LLC

Runs the performance collector (2s period) and the throughput recorder
(1s period) side by side for one minute, printing each cycle.

    python example_usage.py [config.json]
"""

import sys
import asyncio
import logging
from pathlib import Path

from perf_telemetry import (
    create_performance_collector, create_throughput_collector,
    ThermalServicePoller, SensorSurfaceUnavailable,
)
from telemetry_config import CollectorConfig, load_collector_config
from telemetry_types import ThroughputReport

def print_sample(sample):
    temps = ", ".join(f"{domain.value}={temp:.1f}" for domain, temp in sample.domain_temperatures.items())
    print(f"[{sample.thermal_status}] {temps or 'no temps'} | "
          f"cpu {sample.cpu_frequency_mhz} MHz, gpu {sample.gpu_frequency_mhz} MHz | "
          f"util {sample.cpu_utilization}% / {sample.gpu_utilization}%")

def fake_throughput() -> ThroughputReport:
    # Stand-in for the inference subsystem
    return ThroughputReport(model='mobilenetv1', delegate='CPU', throughput=0, period=500)

async def main():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(name)s %(message)s')

    config = load_collector_config(sys.argv[1]) if len(sys.argv) > 1 else CollectorConfig()
    config = config.with_overrides(base_directory=Path(config.base_directory) / 'measurements')

    print("🔥 Initializing performance telemetry...")
    try:
        collector = await create_performance_collector(config)
    except SensorSurfaceUnavailable as e:
        print(f"❌ {e}")
        return

    collector.thermal_status = ThermalServicePoller(collector.source)
    collector.register_cycle_callback(print_sample)

    throughput = create_throughput_collector(config, fake_throughput)

    await collector.start()
    await throughput.start()
    print("✅ Monitoring started!\n")

    try:
        await asyncio.sleep(60)
    except KeyboardInterrupt:
        print("\n⚠️  Interrupted by user")
    finally:
        print("\n🛑 Stopping monitoring...")
        await throughput.stop()
        await collector.stop()

        stats = collector.get_statistics()
        print("📊 Statistics:")
        print(f"   Rows: {stats['cycles_written']} written, {stats['cycles_dropped']} dropped")
        print(f"   Access: {stats['access_mode']}")
        print(f"   Log: {stats['log_path']}")
        print(f"   Throughput log: {throughput.log_path}")

if __name__ == "__main__":
    asyncio.run(main())
