"""Text output of a finished run.

Formats (``output.format``):
  0        tidy table, one row per (individual, chromosome, derived
           selected allele): ``dip x y chrom pos s``; a chromosome that
           carries no derived selected allele gets one row with NA NA
  0 < k < N  coordinates of k individuals sampled without replacement,
           then an ms block of their neutral sites and one of their
           selected sites (two haplotypes per individual)
  N        the same for the whole population, in id order

Sites that are monomorphic within the sample are left out of ms blocks.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, TextIO, Union

import numpy as np
import yaml

from wflandscape.config import SimulationConfig, config_to_dict
from wflandscape.genetics import GeneticMap
from wflandscape.model import SimulationResult
from wflandscape.rng import create_rng_hierarchy

logger = logging.getLogger(__name__)

TIDY_HEADER = "dip x y chrom pos s"


# ═══════════════════════════════════════════════════════════════════════
# TIDY TABLE
# ═══════════════════════════════════════════════════════════════════════

def write_tidy_table(stream: TextIO, records: np.ndarray, genotypes: np.ndarray,
                     genetic_map: GeneticMap) -> int:
    """Write the tidy per-chromosome table. Returns the number of data rows."""
    stream.write(TIDY_HEADER + "\n")
    sel = genetic_map.selected_idx
    n_rows = 0
    for i in range(len(records)):
        x, y = records['x'][i], records['y'][i]
        for chrom in (0, 1):
            derived = sel[genotypes[i, sel, chrom] == 1]
            if len(derived) == 0:
                stream.write(f"{i} {x} {y} {chrom} NA NA\n")
                n_rows += 1
                continue
            for locus in derived:
                stream.write(
                    f"{i} {x} {y} {chrom} "
                    f"{genetic_map.positions[locus]} {genetic_map.s[locus]}\n"
                )
                n_rows += 1
    return n_rows


# ═══════════════════════════════════════════════════════════════════════
# MS BLOCKS
# ═══════════════════════════════════════════════════════════════════════

def ms_block(haplotypes: np.ndarray, positions: np.ndarray) -> str:
    """Format an ms-style block.

    Args:
        haplotypes: (n_haplotypes, n_sites) 0/1 array.
        positions: (n_sites,) site positions in [0, 1).

    Returns:
        "//\\nsegsites: S\\npositions: ...\\n<haplotype rows>", restricted
        to sites that are polymorphic among the haplotypes.
    """
    haplotypes = np.asarray(haplotypes)
    if haplotypes.shape[1]:
        counts = haplotypes.sum(axis=0)
        seg = (counts > 0) & (counts < haplotypes.shape[0])
    else:
        seg = np.zeros(0, dtype=bool)
    lines = ["//", f"segsites: {int(seg.sum())}"]
    if seg.any():
        lines.append("positions: " + " ".join(f"{p:.6f}" for p in positions[seg]))
        lines.extend("".join(str(int(a)) for a in row) for row in haplotypes[:, seg])
    return "\n".join(lines) + "\n"


def sample_individuals(n: int, k: int, rng: np.random.Generator) -> np.ndarray:
    """k distinct ids out of n (all ids, in order, when k == n)."""
    if k > n:
        raise ValueError(f"cannot sample {k} individuals from a population of {n}")
    if k < 1:
        raise ValueError(f"sample size must be >= 1, got {k}")
    if k == n:
        return np.arange(n)
    return rng.choice(n, size=k, replace=False)


def write_ms_sample(stream: TextIO, records: np.ndarray, genotypes: np.ndarray,
                    genetic_map: GeneticMap, k: int,
                    rng: np.random.Generator) -> np.ndarray:
    """Write coordinates of k sampled individuals, then neutral and selected blocks.

    Returns:
        The sampled ids, in output order.
    """
    ids = sample_individuals(len(records), k, rng)
    for i in ids:
        stream.write(f"{records['x'][i]} {records['y'][i]}\n")

    # Two haplotypes per diploid, chromosome 0 first
    haps = genotypes[ids].transpose(0, 2, 1).reshape(2 * len(ids), -1)
    for idx in (genetic_map.neutral_idx, genetic_map.selected_idx):
        stream.write(ms_block(haps[:, idx], genetic_map.positions[idx]))
        stream.write("\n")
    return ids


def write_output(stream: TextIO, result: SimulationResult, fmt: int,
                 rng: np.random.Generator) -> None:
    """Dispatch on the output format code."""
    n = result.n_individuals
    if fmt == 0:
        write_tidy_table(stream, result.records, result.genotypes, result.genetic_map)
    elif 0 < fmt <= n:
        write_ms_sample(stream, result.records, result.genotypes,
                        result.genetic_map, fmt, rng)
    else:
        raise ValueError(f"output format must be in [0, {n}], got {fmt}")


# ═══════════════════════════════════════════════════════════════════════
# RUN DIRECTORY
# ═══════════════════════════════════════════════════════════════════════

SUMMARY_COLUMNS = (
    'generation', 'wbar', 'n_outcross', 'n_chance_self', 'n_forced_self',
    'n_zero_weight_draws', 'het_obs', 'het_exp',
)


def write_generation_summary(path: Union[str, Path], result: SimulationResult) -> None:
    """Per-generation diagnostics as CSV."""
    table = np.column_stack([
        np.arange(result.n_generations),
        result.wbar,
        result.n_outcross,
        result.n_chance_self,
        result.n_forced_self,
        result.n_zero_weight_draws,
        result.heterozygosity_obs,
        result.heterozygosity_exp,
    ])
    fmt = ['%d', '%.8g', '%d', '%d', '%d', '%d', '%.6g', '%.6g']
    np.savetxt(path, table, fmt=fmt, delimiter=',',
               header=','.join(SUMMARY_COLUMNS), comments='')


def save_run(
    directory: Union[str, Path],
    result: SimulationResult,
    config: SimulationConfig,
    rng: Optional[np.random.Generator] = None,
) -> Path:
    """Write population output, summary CSV, fixation times and the config used.

    Returns:
        The output directory.
    """
    out = Path(directory)
    out.mkdir(parents=True, exist_ok=True)
    if rng is None:
        rng = result.sampling_rng
    if rng is None:
        rng = create_rng_hierarchy(config.simulation.seed)['sampling']

    with open(out / "population.txt", "w") as f:
        write_output(f, result, config.output.format, rng)
    if config.output.summary:
        write_generation_summary(out / "generations.csv", result)
    np.savetxt(out / "fixation_times.txt", result.fixation_times, fmt='%d')
    with open(out / "config.yaml", "w") as f:
        yaml.safe_dump(config_to_dict(config), f, sort_keys=False)

    logger.info("wrote results to %s", out)
    return out
