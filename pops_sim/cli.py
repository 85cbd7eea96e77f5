"""Command-line entry point: ``pops-sim CONFIG [options]``.

Options override the matching YAML fields; everything else comes from
the configuration file (and an optional scenario file merged over it).
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Dict, List, Optional

from pops_sim.config import load_config
from pops_sim.gridio import RasterGridStore
from pops_sim.model import run_simulation

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='pops-sim',
        description='Stochastic pest and pathogen spread simulation with optional remote steering',
    )
    parser.add_argument('config', help='Base configuration YAML')
    parser.add_argument('--scenario', help='Scenario YAML merged over the base configuration')
    parser.add_argument('--grids', default='.',
                        help='Directory with input GeoTIFFs; outputs are written there too')
    seed = parser.add_mutually_exclusive_group()
    seed.add_argument('--seed', type=int, help='Master random seed')
    seed.add_argument('--generate-seed', action='store_true',
                      help='Draw the master seed from system entropy')
    parser.add_argument('--runs', type=int, help='Number of stochastic runs')
    parser.add_argument('--threads', type=int, help='Worker threads for the ensemble')
    parser.add_argument('--ip-address', dest='host', help='Steering server address')
    parser.add_argument('--port', type=int, help='Steering server port')
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose messages')
    return parser


def overrides_from_args(args: argparse.Namespace) -> Dict:
    """Translate command-line options into a configuration override dict."""
    overrides: Dict = {}
    simulation = {}
    if args.seed is not None:
        simulation['seed'] = args.seed
        simulation['generate_seed'] = False
    if args.generate_seed:
        simulation['seed'] = None
        simulation['generate_seed'] = True
    if args.runs is not None:
        simulation['runs'] = args.runs
    if args.threads is not None:
        simulation['threads'] = args.threads
    if simulation:
        overrides['simulation'] = simulation
    steering = {}
    if args.host is not None:
        steering['host'] = args.host
    if args.port is not None:
        steering['port'] = args.port
    if steering:
        overrides['steering'] = steering
    return overrides


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    try:
        config = load_config(args.config, args.scenario, overrides_from_args(args))
        result = run_simulation(config, RasterGridStore(args.grids))
    except (ValueError, RuntimeError, KeyError, FileNotFoundError, ConnectionError) as exc:
        print(f"pops-sim: error: {exc}", file=sys.stderr)
        return 1
    logger.info("Simulation finished at %s after %d steps (seed %d)",
                result.final_date, result.steps, result.seed)
    return 0


if __name__ == '__main__':
    sys.exit(main())
