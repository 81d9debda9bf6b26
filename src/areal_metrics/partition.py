"""
Run one analysis over disjoint geographic partitions and merge the results.

Partitions (e.g. one state at a time, keyed by GEOID prefix) share no mutable
state, so they can run in worker processes. Results are merged by a pure
reduction into a PartitionedResult keyed by partition; no locking is needed.

Example:
    >>> from areal_metrics import geoid_prefix, run_partitioned
    >>> by_state = run_partitioned(dataset, geoid_prefix(2), state_analysis, max_workers=4)
    >>> by_state.to_frame()
"""

from concurrent.futures import ProcessPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Hashable, Iterable, Mapping, Optional

import pandas as pd
from tqdm import tqdm

from .dataset import Dataset, GeoRecord
from .deadline import Deadline, check_deadline
from .exceptions import AnalysisTimeoutError, InputValidationError


@dataclass(frozen=True)
class PartitionedResult:
    """Per-partition results in partition order."""
    results: Mapping[Hashable, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'results', MappingProxyType(dict(self.results)))

    def __reduce__(self):
        return (PartitionedResult, (dict(self.results),))

    def __len__(self) -> int:
        return len(self.results)

    def __getitem__(self, key: Hashable) -> Any:
        return self.results[key]

    @property
    def keys(self):
        return list(self.results)

    def to_frame(self) -> pd.DataFrame:
        """
        One row per partition. Results with a to_dict() method are expanded
        into columns; anything else lands in a single 'result' column.
        """
        rows = []
        for key, result in self.results.items():
            row: Dict[str, Any] = {'partition': key}
            if hasattr(result, 'to_dict'):
                row.update(result.to_dict())
            else:
                row['result'] = result
            rows.append(row)
        return pd.DataFrame(rows)


def merge_results(parts: Iterable[PartitionedResult]) -> PartitionedResult:
    """
    Combine PartitionedResults computed separately (e.g. on different machines).

    Raises:
        InputValidationError: If two parts cover the same partition key.
    """
    merged: Dict[Hashable, Any] = {}
    for part in parts:
        overlap = set(merged) & set(part.results)
        if overlap:
            raise InputValidationError(f"Partitions computed twice: {sorted(map(str, overlap))}")
        merged.update(part.results)
    return PartitionedResult(merged)


def run_partitioned(
    dataset: Dataset,
    key_fn: Callable[[GeoRecord], Hashable],
    analysis_fn: Callable[[Dataset], Any],
    max_workers: Optional[int] = None,
    deadline: Optional[Deadline] = None,
    show_progress: bool = False
) -> PartitionedResult:
    """
    Apply analysis_fn to each partition of the dataset.

    Args:
        dataset: Source records.
        key_fn: Maps a record to its partition key (see geoid_prefix()).
        analysis_fn: Dataset -> result. Must be a module-level function when
                    max_workers > 1 so it can be sent to worker processes.
        max_workers: Worker processes. None or 1 runs inline.
        deadline: Optional Deadline checked between partitions. With worker
                 processes it also bounds the wait for results.
        show_progress: Show a tqdm progress bar.

    Returns:
        PartitionedResult in first-appearance partition order.

    Raises:
        Whatever analysis_fn raises for any partition; remaining partitions
        are cancelled and no partial result is returned.
        AnalysisTimeoutError: If the deadline expires first. Running workers
                             are abandoned rather than waited for.
    """
    partitions = dataset.partition_by(key_fn)
    order = list(partitions)
    results: Dict[Hashable, Any] = {}

    if max_workers is None or max_workers <= 1:
        for key in tqdm(order, desc="Partitions", unit="partition", disable=not show_progress):
            check_deadline(deadline, f"partition {key!r}")
            results[key] = analysis_fn(partitions[key])
    else:
        pool = ProcessPoolExecutor(max_workers=max_workers)
        futures = {pool.submit(analysis_fn, partitions[key]): key for key in order}
        try:
            timeout = deadline.remaining if deadline is not None else None
            try:
                for future in tqdm(
                    as_completed(futures, timeout=timeout), total=len(futures),
                    desc="Partitions", unit="partition", disable=not show_progress
                ):
                    check_deadline(deadline, "partitioned run")
                    results[futures[future]] = future.result()
            except FuturesTimeoutError as exc:
                if deadline is None or isinstance(exc, AnalysisTimeoutError):
                    raise
                raise AnalysisTimeoutError("partitioned run", deadline.elapsed, deadline.budget) from exc
        except BaseException:
            # Do not wait for stalled workers
            pool.shutdown(wait=False, cancel_futures=True)
            raise
        pool.shutdown(wait=True)

    return PartitionedResult({key: results[key] for key in order})
