"""
cli.py

Command line entry point.

    flightctl generate circle -c 4 -r 20 --slat 47.3977 --slon 8.5456 \\
        --tlat 47.3980 --tlon 8.5460 --talt 30 -h 10 -p plans/
    flightctl run -v udp://:14540 -v udp://:14541 -p plans/plan_0.plan -p plans/plan_1.plan
    flightctl ui -v udp://:14540
    flightctl echo hello
"""

import sys
import asyncio
import argparse
import logging
from contextlib import nullcontext
from typing import List, Optional

from kafka.errors import KafkaError
from rich.live import Live

from flightctl import __version__
from flightctl.config import FlightctlConfig, setup_logging
from flightctl.dashboard import CONSOLE, Dashboard, render_targets
from flightctl.errors import FlightctlError
from flightctl.generate import CircleMission, LineMission, ShapeMission, SquareMission
from flightctl.manager import ConnectionManager
from flightctl.run_mode import QuitSignal, RunOrchestrator, run_app, validate_pairs
from flightctl.telemetry_bus import KafkaEventProducer, KafkaTelemetrySink
from flightctl.vehicle import MavlinkVehicleLink, SimulatedVehicleLink, VehicleLink

logger = logging.getLogger(__name__)

# per-item flight time of the simulated vehicle
SIMULATED_STEP_SECONDS = 0.5


def _shape_parent() -> argparse.ArgumentParser:
    # -h is the hold time here, so help moves to --help only
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument('--help', action='help', help='Show this help message and exit')
    parent.add_argument('--slat', type=float, required=True, dest='start_lat',
                        help="The drone's starting latitude")
    parent.add_argument('--slon', type=float, required=True, dest='start_lon',
                        help="The drone's starting longitude")
    parent.add_argument('--tlat', type=float, required=True, dest='target_lat',
                        help="The shape's location latitude")
    parent.add_argument('--tlon', type=float, required=True, dest='target_lon',
                        help="The shape's location longitude")
    parent.add_argument('--talt', type=int, required=True, dest='target_alt',
                        help="The shape's location altitude in meters")
    parent.add_argument('-h', type=int, required=True, dest='hold_sec',
                        help='How long to hold the shape in seconds')
    parent.add_argument('-p', required=True, dest='path',
                        help='Path to a directory to save the plan files')
    return parent


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='flightctl',
        description='Multi vehicle flight controller',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Modes:
  generate   Write one QGroundControl .plan per vehicle for a formation
  run        Fly each plan on its paired vehicle and show live progress
  ui         Connect to vehicles and show the connection table
  echo       CLI parser sanity check
        """
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--log-level', default=None,
                        help='Logging level (default: INFO or FLIGHTCTL_LOG_LEVEL)')
    parser.add_argument('--log-file', default=None,
                        help='Write logs to a file instead of stderr')
    commands = parser.add_subparsers(dest='command', metavar='COMMAND', required=True)

    # generate
    generate = commands.add_parser('generate', aliases=['g'],
                                   help='Generate plans in QGroundControl format for run mode')
    shapes = generate.add_subparsers(dest='shape', metavar='SHAPE', required=True)
    parent = _shape_parent()

    circle = shapes.add_parser('circle', parents=[parent], add_help=False,
                               help='Create circle shape')
    circle.add_argument('-c', type=int, required=True, dest='count',
                        help='Number of vehicles used to create the circle')
    circle.add_argument('-r', type=float, required=True, dest='radius',
                        help='Radius of the circle shape in meters')

    square = shapes.add_parser('square', parents=[parent], add_help=False,
                               help='Create square shape with 4 drones')
    square.add_argument('-w', type=float, required=True, dest='width',
                        help='Width of each side of the square shape in meters')

    line = shapes.add_parser('line', parents=[parent], add_help=False,
                             help='Create line shape with 3 drones')
    line.add_argument('-w', type=float, required=True, dest='width',
                      help='Width to create the line shape in meters')
    line.add_argument('-a', type=float, required=True, dest='angle',
                      help="Angle of the line shape in radians relative to the earth's longitude")

    # run
    run = commands.add_parser('run', help='Fly plans on vehicles in run mode')
    run.add_argument('-v', action='append', required=True, dest='vehicles', metavar='VEHICLE',
                     help='Vehicle endpoint, e.g. udp://:14540 (repeatable)')
    run.add_argument('-p', action='append', required=True, dest='plans', metavar='PLAN',
                     help='.plan file for the corresponding vehicle (repeatable)')
    run.add_argument('--simulate', action='store_true',
                     help='Fly plans on in-memory simulated vehicles')
    run.add_argument('--api-port', type=int, default=None,
                     help='Serve the run status API on this port')
    run.add_argument('--kafka-bootstrap', nargs='+', default=None, metavar='HOST:PORT',
                     help='Publish run telemetry to these Kafka brokers')
    run.add_argument('--tick-rate', type=int, default=None, metavar='MS',
                     help='Dashboard redraw period in milliseconds')
    run.add_argument('--exit-on-complete', action='store_true',
                     help='Exit once every worker has finished instead of waiting for quit')

    # ui
    ui = commands.add_parser('ui', help='Start the connection view in ui mode')
    ui.add_argument('-v', action='append', default=[], dest='vehicles', metavar='VEHICLE',
                    help='Vehicle endpoint to connect (repeatable)')
    ui.add_argument('--simulate', action='store_true',
                    help='Connect to in-memory simulated vehicles')

    # echo
    echo = commands.add_parser('echo', aliases=['e'], help='CLI parser sanity check')
    echo.add_argument('text')

    return parser


def build_config(args) -> FlightctlConfig:
    """Environment config overridden by command line flags"""
    config = FlightctlConfig.from_env()
    if args.log_level:
        config.log_level = args.log_level.upper()
    if args.log_file:
        config.log_file = args.log_file
    if getattr(args, 'tick_rate', None) is not None:
        config.tick_rate_ms = args.tick_rate
    if getattr(args, 'api_port', None) is not None:
        config.api_port = args.api_port
    if getattr(args, 'kafka_bootstrap', None):
        config.kafka_bootstrap_servers = args.kafka_bootstrap
    return config


def build_link(args, config: FlightctlConfig) -> VehicleLink:
    if args.simulate:
        return SimulatedVehicleLink(step_delay=SIMULATED_STEP_SECONDS)
    return MavlinkVehicleLink(config)


def build_shape(args) -> ShapeMission:
    location = dict(
        start_lat=args.start_lat,
        start_lon=args.start_lon,
        target_lat=args.target_lat,
        target_lon=args.target_lon,
        target_alt=args.target_alt,
        hold_sec=args.hold_sec,
    )
    if args.shape == 'circle':
        logger.info(f"Generate circle shape with {args.count} vehicles")
        return CircleMission(args.count, args.radius, **location)
    if args.shape == 'square':
        logger.info(f"Generating square shape with sides length {args.width} meters")
        return SquareMission(args.width, **location)
    logger.info(f"Generate line shape at angle {args.angle} radians")
    return LineMission(args.width, args.angle, **location)

# ============================================================================
# COMMANDS
# ============================================================================

def cmd_generate(args, config: FlightctlConfig) -> int:
    build_shape(args).write_mission_to_disk(args.path)
    return 0


def cmd_echo(args, config: FlightctlConfig) -> int:
    print(f"Echo: {args.text}")
    return 0


async def cmd_run(args, config: FlightctlConfig) -> int:
    pairs = validate_pairs(args.vehicles, args.plans)
    for vehicle, plan in pairs:
        logger.info(f"Found {vehicle} {plan}")

    link = build_link(args, config)
    sinks = []
    producer = None
    if config.kafka_bootstrap_servers:
        producer = KafkaEventProducer(config.kafka_bootstrap_servers)
        sinks.append(KafkaTelemetrySink(producer))

    quit_signal = QuitSignal()
    quit_signal.install(asyncio.get_running_loop(), watch_stdin=True)
    try:
        async with ConnectionManager(link) as manager:
            # one connection per distinct endpoint, shared by its workers
            await manager.add_targets(list(dict.fromkeys(args.vehicles)))
            orchestrator = RunOrchestrator(link, sinks=sinks, manager=manager)
            dashboard = Dashboard() if CONSOLE.is_terminal else None
            with dashboard or nullcontext():
                result = await run_app(
                    orchestrator, pairs, config,
                    quit_signal=quit_signal,
                    dashboard=dashboard,
                    exit_on_complete=args.exit_on_complete,
                )
    finally:
        quit_signal.uninstall()
        if producer is not None:
            producer.flush()
            producer.close()

    for outcome in result.failed:
        logger.error(f"✗ Vehicle {outcome.worker.id} ({outcome.worker.endpoint}): {outcome.error}")
    logger.info(f"Run finished: {len(pairs) - len(result.failed)}/{len(pairs)} missions complete")
    return 0 if result.ok else 1


async def cmd_ui(args, config: FlightctlConfig) -> int:
    link = build_link(args, config)
    quit_signal = QuitSignal()
    quit_signal.install(asyncio.get_running_loop(), watch_stdin=True)
    try:
        async with ConnectionManager(link) as manager:
            if args.vehicles:
                await manager.add_targets(args.vehicles)
            with Live(render_targets(manager.targets), console=CONSOLE, auto_refresh=False) as live:
                while not quit_signal.is_set():
                    live.update(render_targets(manager.targets), refresh=True)
                    await asyncio.sleep(config.tick_rate)
    finally:
        quit_signal.uninstall()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Parse arguments and dispatch; returns the process exit code"""
    args = build_parser().parse_args(argv)

    try:
        config = build_config(args)
    except ValueError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error(f"✗ {e}")
        return 1
    setup_logging(config)

    try:
        if args.command in ('generate', 'g'):
            return cmd_generate(args, config)
        if args.command in ('echo', 'e'):
            return cmd_echo(args, config)
        if args.command == 'run':
            return asyncio.run(cmd_run(args, config))
        if args.command == 'ui':
            return asyncio.run(cmd_ui(args, config))
    except (FlightctlError, KafkaError, OSError, ValueError) as e:
        logger.error(f"✗ {e}")
        return 1

    return 1


if __name__ == "__main__":
    sys.exit(main())
