#!/usr/bin/env python3
"""
Command-line runner for the robot telemetry fault simulation.

Runs a deterministic, virtual-time simulation: starts the synthetic series
for one robot, injects fault templates into a run, advances the clock and
reports the resulting telemetry and injection states.

Usage:
    python -m robot_telemetry_sim.runner --duration 120 --templates builtin-overheat-high
    python -m robot_telemetry_sim.runner --store-dir .simstate --output report.json
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

from robot_telemetry_sim.core.faults.fault_effects import METRICS
from robot_telemetry_sim.core.faults.fault_injector import FaultInjectionScheduler
from robot_telemetry_sim.core.faults.fault_templates import (
    FaultConfigurationError,
    FaultTemplateRegistry,
)
from robot_telemetry_sim.core.persistence.kv_store import (
    InMemoryStore,
    JsonFileStore,
    NumpyEncoder,
)
from robot_telemetry_sim.core.simulation.run_store import SimRunRegistry
from robot_telemetry_sim.core.telemetry.telemetry_source import (
    JointTelemetrySampler,
    RobotTelemetrySource,
)
from robot_telemetry_sim.core.telemetry.tick_scheduler import ManualTickScheduler

DEFAULT_TEMPLATES = ['builtin-overheat-high', 'builtin-high-vibration-medium']


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Robot Telemetry Simulation - synthetic joint telemetry with fault injection",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument("--duration", type=float, default=60.0,
                        help="Simulated time to advance after injection [s]")
    parser.add_argument("--seed", type=int, default=42,
                        help="Random seed for deterministic execution")
    parser.add_argument("--robot", type=str, default="robot-1",
                        help="Robot identifier")
    parser.add_argument("--run", type=str, default=None,
                        help="Run identifier (defaults to the stored demo run)")
    parser.add_argument("--templates", nargs="*", default=DEFAULT_TEMPLATES,
                        help="Fault template ids to inject, in order")
    parser.add_argument("--interval", type=float, default=0.0,
                        help="Spacing between consecutive injection starts [s]")
    parser.add_argument("--joints", type=int, default=6,
                        help="Number of joints in the final telemetry frame")
    parser.add_argument("--epoch", type=float, default=None,
                        help="Virtual clock start, epoch seconds (defaults to now)")
    parser.add_argument("--store-dir", type=Path, default=None,
                        help="Persist templates/injections as JSON in this directory")
    parser.add_argument("--output", type=Path, default=None,
                        help="Write a JSON report to this file")
    parser.add_argument("--verbose", action="store_true",
                        help="Enable debug logging")
    return parser


def run_simulation(args: argparse.Namespace) -> dict:
    """Wire the components together, run the scenario and return a report."""
    ticks = ManualTickScheduler(start_time=args.epoch if args.epoch is not None else time.time())
    store = JsonFileStore(args.store_dir) if args.store_dir else InMemoryStore()

    registry = FaultTemplateRegistry(store, time_source=ticks.now)
    faults = FaultInjectionScheduler(store, registry, time_source=ticks.now)
    runs = SimRunRegistry(store, time_source=ticks.now)

    run_id = args.run or runs.ensure_demo_run(seed=args.seed).id
    if runs.get_robot_telemetry_mode(args.robot) == 'real':
        raise RuntimeError(f"Robot '{args.robot}' is in real telemetry mode; nothing to simulate")

    source = RobotTelemetrySource(faults, ticks, seed=args.seed)
    sampler = JointTelemetrySampler(faults, seed=args.seed)
    try:
        source.start(args.robot)
        injected = faults.inject_faults(run_id, args.robot, args.templates, args.interval)
        ticks.advance(args.duration)

        now = ticks.now()
        frame = source.latest_frame(args.robot)
        return {
            'run_id': run_id,
            'robot_id': args.robot,
            'seed': args.seed,
            'now': now,
            'latest_frame': frame.to_dict() if frame else None,
            'series': {
                metric: [p.to_dict() for p in source.generator(args.robot, metric).get_series()]
                for metric in METRICS
            },
            'injections': [
                dict(inj.to_dict(), status=faults.get_injection_status(inj, now).value)
                for inj in faults.list_injections_by_run(run_id)
            ],
            'joint_samples': [s.to_dict() for s in sampler.sample_robot(args.robot, args.joints, now)],
            'injected_count': len(injected),
        }
    finally:
        source.close()


def main():
    args = build_parser().parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print("=" * 60)
    print(f"Robot Telemetry Simulation (robot: {args.robot}, seed: {args.seed})")
    print("=" * 60)

    try:
        report = run_simulation(args)
    except KeyboardInterrupt:
        print("\nSimulation interrupted by user.")
        sys.exit(0)
    except (FaultConfigurationError, ValueError, RuntimeError) as e:
        print(f"\nSIMULATION ERROR: {e}")
        sys.exit(1)

    print(f"Run:            {report['run_id']}")
    print(f"Injected:       {report['injected_count']} fault(s)")
    for inj in report['injections']:
        tpl = inj['template_snapshot']
        print(f"  - {tpl['name']:<24} {tpl['fault_type']:<15} {inj['status']}")
    if report['latest_frame']:
        frame = report['latest_frame']
        print(f"Current:        {frame['current']:.3f} A")
        print(f"Vibration:      {frame['vibration']:.3f} mm/s")
        print(f"Temperature:    {frame['temperature']:.2f} degC")
    labels = sorted({s['label'] for s in report['joint_samples']})
    print(f"Joint labels:   {', '.join(labels)}")

    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        with open(args.output, 'w') as f:
            json.dump(report, f, cls=NumpyEncoder, indent=2)
        print(f"  [JSON] Saved: {args.output}")


if __name__ == "__main__":
    main()
