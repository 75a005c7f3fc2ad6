"""
Result File Discovery
=====================

Locates per-sample quantification files under a directory tree and assigns
each file a sample ID through an injectable strategy (a pure function from
file path to sample ID). Uniqueness is validated immediately after
extraction.
"""

import re
from pathlib import Path
from typing import Callable, Dict, List, Union
import logging

from common.config import SampleIdStrategy
from common.exceptions import AmbiguousSampleIdError, NoFilesFoundError

logger = logging.getLogger(__name__)

SampleIdFn = Callable[[Path], str]

RUN_ACCESSION_PATTERN = r'[SED]RR\d+'


def prefix_before_underscore(path: Path) -> str:
    """
    Sample ID is the file name text before the first underscore.

    Example: SRR1234_sorted.genes.results -> SRR1234
    A name without underscores falls back to the name up to the first dot.
    """
    name = Path(path).name
    if '_' in name:
        return name.split('_', 1)[0]
    return name.split('.', 1)[0]


def parent_directory_name(path: Path) -> str:
    """Sample ID is the name of the directory holding the file."""
    return Path(path).parent.name


def regex_sample_id(pattern: str) -> SampleIdFn:
    """
    Build a strategy extracting the first regex match from the file path.

    If the pattern has a capture group the first group is used.
    """
    compiled = re.compile(pattern)

    def extract(path: Path) -> str:
        match = compiled.search(str(path))
        if match is None:
            raise AmbiguousSampleIdError(
                f"No sample ID matching '{pattern}' in file path", path=path
            )
        return match.group(1) if compiled.groups else match.group(0)

    return extract


def run_accession(path: Path) -> str:
    """Sample ID is the SRA/ENA/DDBJ run accession found in the path."""
    return regex_sample_id(RUN_ACCESSION_PATTERN)(path)


def get_sample_id_fn(
    strategy: Union[SampleIdStrategy, str, None],
    regex: str = None,
    default: SampleIdFn = prefix_before_underscore
) -> SampleIdFn:
    """Resolve a configured strategy name (or custom regex) to a function."""
    if regex:
        return regex_sample_id(regex)
    if strategy is None:
        return default

    strategy = SampleIdStrategy(strategy)
    if strategy == SampleIdStrategy.PREFIX:
        return prefix_before_underscore
    if strategy == SampleIdStrategy.PARENT_DIR:
        return parent_directory_name
    return run_accession


def find_result_files(root: Union[str, Path], pattern: str) -> List[Path]:
    """Recursively search ``root`` for files matching the glob ``pattern``."""
    root = Path(root)
    if not root.is_dir():
        raise NoFilesFoundError("Search root is not a directory", path=root)

    files = sorted(p for p in root.rglob(pattern) if p.is_file())
    if not files:
        raise NoFilesFoundError(f"No files matching '{pattern}'", path=root)

    logger.info(f"Found {len(files)} files matching '{pattern}' under {root}")
    return files


def assign_sample_ids(files: List[Path], sample_id_fn: SampleIdFn) -> Dict[str, Path]:
    """
    Map sample ID -> file, failing if two files yield the same ID.

    Returns an insertion-ordered dict sorted by sample ID.
    """
    assigned: Dict[str, Path] = {}
    for path in files:
        sample_id = sample_id_fn(path)
        if not sample_id:
            raise AmbiguousSampleIdError("Empty sample ID extracted", path=path)
        if sample_id in assigned:
            raise AmbiguousSampleIdError(
                f"Sample ID '{sample_id}' also extracted from {assigned[sample_id]}",
                sample=sample_id,
                path=path
            )
        assigned[sample_id] = path

    return dict(sorted(assigned.items()))


def discover_samples(
    root: Union[str, Path],
    pattern: str,
    sample_id_fn: SampleIdFn = prefix_before_underscore
) -> Dict[str, Path]:
    """Find result files and assign unique sample IDs."""
    files = find_result_files(root, pattern)
    return assign_sample_ids(files, sample_id_fn)
