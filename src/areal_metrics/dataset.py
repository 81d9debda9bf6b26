"""
GeoRecord and Dataset: the immutable input to every analysis.

A Dataset is an ordered collection of geographic records keyed by an identifier
such as a Census GEOID. Each record carries a mapping of numeric attributes
(None for missing), an optional (longitude, latitude) centroid and an optional
non-negative weight such as population.

All validation happens at construction. Once built a Dataset is never mutated;
accessors return fresh copies so derived results never alias its storage.

Example:
    >>> ds = Dataset.from_records(
    ...     [{'GEOID': '06001', 'pct_single': 31.2, 'pop': 1600000}],
    ...     id_field='GEOID',
    ...     weight_field='pop'
    ... )
    >>> ds.column('pct_single')
    array([31.2])
"""

import math
import numbers
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Hashable, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .exceptions import InputValidationError, MissingAttributeError


def _coerce_value(record_id: str, name: str, value: Any) -> Optional[float]:
    """Normalize an attribute value to float or None (NaN counts as missing)."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise InputValidationError(
            f"Record '{record_id}': attribute '{name}' is not numeric ({value!r})"
        )
    value = float(value)
    if math.isnan(value):
        return None
    if math.isinf(value):
        raise InputValidationError(
            f"Record '{record_id}': attribute '{name}' is infinite"
        )
    return value


@dataclass(frozen=True)
class GeoRecord:
    """
    One geographic unit.

    Attributes:
        id: Unique identifier (e.g. GEOID '06001' or a tract/PUMA code).
        attributes: Read-only mapping of attribute name to float or None.
        centroid: Optional (longitude, latitude) pair.
        weight: Optional non-negative weight (e.g. population).
    """
    id: str
    attributes: Mapping[str, Optional[float]] = field(default_factory=dict)
    centroid: Optional[Tuple[float, float]] = None
    weight: Optional[float] = None

    def __post_init__(self):
        if not isinstance(self.id, str) or not self.id:
            raise InputValidationError(f"Record id must be a non-empty string, got {self.id!r}")

        if not isinstance(self.attributes, Mapping):
            raise InputValidationError(f"Record '{self.id}': attributes must be a mapping")
        clean = {
            str(name): _coerce_value(self.id, name, value)
            for name, value in self.attributes.items()
        }
        object.__setattr__(self, 'attributes', MappingProxyType(clean))

        if self.centroid is not None:
            try:
                lon, lat = self.centroid
                lon, lat = float(lon), float(lat)
            except (TypeError, ValueError):
                raise InputValidationError(
                    f"Record '{self.id}': centroid must be a (lon, lat) pair, got {self.centroid!r}"
                )
            if not (math.isfinite(lon) and math.isfinite(lat)):
                raise InputValidationError(f"Record '{self.id}': centroid is not finite")
            object.__setattr__(self, 'centroid', (lon, lat))

        if self.weight is not None:
            if isinstance(self.weight, bool) or not isinstance(self.weight, numbers.Real):
                raise InputValidationError(f"Record '{self.id}': weight is not numeric")
            weight = float(self.weight)
            if not math.isfinite(weight) or weight < 0:
                raise InputValidationError(
                    f"Record '{self.id}': weight must be finite and non-negative, got {weight}"
                )
            object.__setattr__(self, 'weight', weight)

    def __reduce__(self):
        # mappingproxy is not picklable; rebuild from a plain dict in worker processes
        return (GeoRecord, (self.id, dict(self.attributes), self.centroid, self.weight))

    def get(self, name: str) -> Optional[float]:
        return self.attributes.get(name)


class Dataset:
    """
    Ordered, immutable collection of GeoRecords with unique ids.

    Args:
        records: Iterable of GeoRecord instances.

    Raises:
        InputValidationError: On duplicate ids or a non-GeoRecord entry.
    """

    def __init__(self, records: Iterable[GeoRecord]):
        records = tuple(records)
        seen = set()
        duplicates = []
        for record in records:
            if not isinstance(record, GeoRecord):
                raise InputValidationError(f"Expected GeoRecord, got {type(record).__name__}")
            if record.id in seen:
                duplicates.append(record.id)
            seen.add(record.id)
        if duplicates:
            raise InputValidationError(f"Duplicate record ids: {sorted(set(duplicates))}")

        self._records = records
        self._index = {record.id: i for i, record in enumerate(records)}
        self._attribute_names = frozenset(
            name for record in records for name in record.attributes
        )

    # -------------------------------------------------------------------------
    # CONSTRUCTORS
    # -------------------------------------------------------------------------

    @classmethod
    def from_records(
        cls,
        rows: Iterable[Mapping[str, Any]],
        id_field: str,
        lon_field: Optional[str] = None,
        lat_field: Optional[str] = None,
        weight_field: Optional[str] = None,
        attributes: Optional[Sequence[str]] = None
    ) -> 'Dataset':
        """
        Build a Dataset from flat dict rows as produced by a data loader.

        Every field other than the id/centroid/weight fields becomes an
        attribute unless `attributes` restricts the selection. A weight field
        may also be listed as an attribute.
        """
        if (lon_field is None) != (lat_field is None):
            raise InputValidationError("lon_field and lat_field must be given together")

        reserved = {id_field, lon_field, lat_field, weight_field} - {None}
        records = []
        for row in rows:
            if id_field not in row:
                raise InputValidationError(f"Row is missing id field '{id_field}': {dict(row)!r}")
            record_id = str(row[id_field])

            if attributes is None:
                attrs = {k: v for k, v in row.items() if k not in reserved}
            else:
                attrs = {name: row.get(name) for name in attributes}

            centroid = None
            if lon_field is not None:
                lon, lat = row.get(lon_field), row.get(lat_field)
                if lon is not None and lat is not None and not (
                    _is_nan(lon) or _is_nan(lat)
                ):
                    centroid = (lon, lat)

            weight = row.get(weight_field) if weight_field is not None else None
            if weight is not None and _is_nan(weight):
                weight = None

            records.append(GeoRecord(record_id, attrs, centroid, weight))
        return cls(records)

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        id_column: str,
        lon_column: Optional[str] = None,
        lat_column: Optional[str] = None,
        weight_column: Optional[str] = None,
        attributes: Optional[Sequence[str]] = None
    ) -> 'Dataset':
        """Build a Dataset from a pandas DataFrame (one row per geography)."""
        missing = [
            c for c in [id_column, lon_column, lat_column, weight_column, *(attributes or [])]
            if c is not None and c not in df.columns
        ]
        if missing:
            raise MissingAttributeError(missing[0], [str(c) for c in df.columns])

        # Object dtype keeps None/NaN intact and avoids numpy scalar surprises
        rows = df.astype(object).where(pd.notna(df), None).to_dict(orient='records')
        return cls.from_records(
            rows,
            id_field=id_column,
            lon_field=lon_column,
            lat_field=lat_column,
            weight_field=weight_column,
            attributes=attributes
        )

    # -------------------------------------------------------------------------
    # ACCESSORS
    # -------------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[GeoRecord]:
        return iter(self._records)

    def __getitem__(self, record_id: str) -> GeoRecord:
        try:
            return self._records[self._index[record_id]]
        except KeyError:
            raise KeyError(f"No record with id '{record_id}'")

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._index

    def __repr__(self) -> str:
        return f"Dataset(n={len(self)}, attributes={sorted(self._attribute_names)})"

    @property
    def ids(self) -> Tuple[str, ...]:
        return tuple(record.id for record in self._records)

    @property
    def attribute_names(self) -> frozenset:
        return self._attribute_names

    @property
    def has_weights(self) -> bool:
        return any(record.weight is not None for record in self._records)

    @property
    def has_centroids(self) -> bool:
        return len(self) > 0 and all(record.centroid is not None for record in self._records)

    def require(self, *names: str) -> None:
        """Raise MissingAttributeError for the first name no record declares."""
        for name in names:
            if name not in self._attribute_names:
                raise MissingAttributeError(name, list(self._attribute_names))

    def column(self, name: str) -> np.ndarray:
        """
        Return one attribute as a float array, NaN where missing.

        Raises:
            MissingAttributeError: If no record declares the attribute.
        """
        self.require(name)
        values = [record.get(name) for record in self._records]
        return np.array([np.nan if v is None else v for v in values], dtype=float)

    def weights(self) -> np.ndarray:
        """Per-record weights; records without a weight count as 1.0."""
        return np.array(
            [1.0 if record.weight is None else record.weight for record in self._records],
            dtype=float
        )

    def centroids(self) -> np.ndarray:
        """
        Return an (n, 2) array of (lon, lat) centroids.

        Raises:
            MissingAttributeError: If any record lacks a centroid.
        """
        missing = [record.id for record in self._records if record.centroid is None]
        if missing:
            raise MissingAttributeError(
                'centroid', detail=f"{len(missing)} record(s) without centroid, e.g. {missing[:5]}"
            )
        return np.array([record.centroid for record in self._records], dtype=float).reshape(-1, 2)

    # -------------------------------------------------------------------------
    # DERIVED DATASETS
    # -------------------------------------------------------------------------

    def subset(self, ids: Iterable[str]) -> 'Dataset':
        """New Dataset with the given ids, in this dataset's order."""
        wanted = set(ids)
        unknown = wanted - set(self._index)
        if unknown:
            raise InputValidationError(f"Unknown record ids: {sorted(unknown)[:10]}")
        return Dataset(record for record in self._records if record.id in wanted)

    def filter(self, predicate: Callable[[GeoRecord], bool]) -> 'Dataset':
        return Dataset(record for record in self._records if predicate(record))

    def partition_by(self, key_fn: Callable[[GeoRecord], Hashable]) -> Dict[Hashable, 'Dataset']:
        """
        Split into disjoint Datasets keyed by key_fn(record).

        Partition order follows first appearance; record order within each
        partition is preserved.
        """
        groups: Dict[Hashable, List[GeoRecord]] = {}
        for record in self._records:
            groups.setdefault(key_fn(record), []).append(record)
        return {key: Dataset(records) for key, records in groups.items()}

    def to_frame(self) -> pd.DataFrame:
        """One row per geography: id, every attribute, lon/lat and weight."""
        columns = sorted(self._attribute_names)
        rows = []
        for record in self._records:
            row: Dict[str, Any] = {'id': record.id}
            for name in columns:
                value = record.get(name)
                row[name] = np.nan if value is None else value
            row['lon'] = record.centroid[0] if record.centroid else np.nan
            row['lat'] = record.centroid[1] if record.centroid else np.nan
            row['weight'] = np.nan if record.weight is None else record.weight
            rows.append(row)
        return pd.DataFrame(rows, columns=['id', *columns, 'lon', 'lat', 'weight'])


def geoid_prefix(length: int) -> Callable[[GeoRecord], str]:
    """
    Partition key taking the first `length` characters of the record id.

    With Census GEOIDs, length=2 groups counties or tracts by state and
    length=5 groups tracts by county.
    """
    if length <= 0:
        raise ValueError("length must be positive")
    return lambda record: record.id[:length]


def _is_nan(value: Any) -> bool:
    return isinstance(value, float) and math.isnan(value)
