"""Command-line entry point.

Usage:
    wflandscape --config configs/default.yaml
    wflandscape -N 500 --radius 0.05 --dispersal 0.02 --seed 7 --format 20
    wflandscape --config configs/default.yaml --generations 200 --workers 4 --plot

Command-line values override the YAML file, which overrides the built-in
defaults. Results go to ``output.directory`` (or ``--output``).
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from wflandscape import __version__
from wflandscape.config import config_from_dict, deep_merge, load_config
from wflandscape.errors import MatingRuleError
from wflandscape.model import run_simulation
from wflandscape.output import save_run
from wflandscape.snapshots import SnapshotRecorder

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='wflandscape',
        description='Wright-Fisher simulation on a continuous landscape with '
                    'fitness-weighted, radius-bounded mating.',
    )
    parser.add_argument('--config', type=Path, default=None,
                        help='Base YAML configuration')
    parser.add_argument('--scenario', type=Path, default=None,
                        help='Scenario YAML merged over the base configuration')
    parser.add_argument('-N', '--n-individuals', type=int, default=None,
                        help='Population size')
    parser.add_argument('--radius', type=float, default=None, help='Mating radius')
    parser.add_argument('--dispersal', type=float, default=None,
                        help='Per-axis standard deviation of offspring dispersal')
    parser.add_argument('--seed', type=int, default=None, help='Master RNG seed')
    parser.add_argument('--generations', type=int, default=None,
                        help='Generations to run (default 10N)')
    parser.add_argument('--workers', type=int, default=None,
                        help='Threads per generation (>1 implies per-slot streams)')
    parser.add_argument('--format', type=int, default=None,
                        help='0 = tidy table, k = ms sample of k individuals, N = everyone')
    parser.add_argument('--output', type=Path, default=None, help='Output directory')
    parser.add_argument('--plot', action='store_true',
                        help='Save landscape and trajectory figures')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def overrides_from_args(args: argparse.Namespace) -> Dict:
    """Nested config overrides for every option given on the command line."""
    mapping = {
        'n_individuals': ('simulation', 'n_individuals'),
        'seed': ('simulation', 'seed'),
        'generations': ('simulation', 'generations'),
        'workers': ('simulation', 'workers'),
        'radius': ('landscape', 'radius'),
        'dispersal': ('landscape', 'dispersal'),
        'format': ('output', 'format'),
        'output': ('output', 'directory'),
    }
    overrides: Dict = {}
    for attr, (section, key) in mapping.items():
        value = getattr(args, attr)
        if value is not None:
            overrides.setdefault(section, {})[key] = (
                str(value) if isinstance(value, Path) else value
            )
    return overrides


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    if args.scenario is not None and args.config is None:
        logger.error("--scenario requires --config (the base it is merged over)")
        return 2

    overrides = overrides_from_args(args)
    try:
        if args.config is not None:
            config = load_config(args.config, args.scenario, overrides)
        else:
            config = config_from_dict(deep_merge({}, overrides))
    except (FileNotFoundError, ValueError) as exc:
        logger.error("invalid configuration: %s", exc)
        return 2

    recorder = SnapshotRecorder(
        enabled=config.output.snapshots,
        interval=config.output.snapshot_interval,
    )
    try:
        result = run_simulation(config, recorder=recorder)
    except MatingRuleError as exc:
        logger.error("simulation aborted: %s", exc)
        return 1

    out = save_run(config.output.directory, result, config)
    if recorder.snapshots:
        recorder.save(str(out / "snapshots.npz"))

    if args.plot:
        from wflandscape.viz import (
            plot_allele_frequencies,
            plot_fitness_trajectory,
            plot_landscape,
        )
        plot_landscape(result.records, result.fitness, radius=config.landscape.radius,
                       save_path=str(out / "landscape.png"))
        plot_fitness_trajectory(result, save_path=str(out / "fitness.png"))
        plot_allele_frequencies(result, save_path=str(out / "allele_freq.png"))
    return 0


if __name__ == '__main__':
    sys.exit(main())
