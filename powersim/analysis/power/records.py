"""
Trial records and the result table.

Evaluators may return a mapping, a pandas Series, a one-row DataFrame or a
dataclass instance. Every record is flattened to a dict here; the field set
of the first record becomes the schema that all later records must match.
"""

import dataclasses
from collections.abc import Mapping
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from powersim.errors import SchemaMismatchError

REQUIRED_FIELDS = ("sample_size", "effect_size", "combination_id")


def to_record(value: Any, combination_id: Optional[int] = None) -> Dict[str, Any]:
    if isinstance(value, pd.DataFrame):
        if len(value) != 1:
            raise SchemaMismatchError(
                f"Evaluator returned a DataFrame with {len(value)} rows, expected exactly 1",
                combination_id=combination_id,
            )
        record = value.iloc[0].to_dict()
    elif isinstance(value, pd.Series):
        record = value.to_dict()
    elif dataclasses.is_dataclass(value) and not isinstance(value, type):
        record = dataclasses.asdict(value)
    elif isinstance(value, Mapping):
        record = dict(value)
    else:
        raise SchemaMismatchError(
            f"Evaluator returned {type(value).__name__}, expected a flat record",
            combination_id=combination_id,
        )

    for key, field_value in record.items():
        if not isinstance(key, str):
            raise SchemaMismatchError(
                f"Record field names must be strings, got {key!r}", combination_id=combination_id
            )
        if isinstance(field_value, (Mapping, list, tuple, set, np.ndarray, pd.Series, pd.DataFrame)):
            raise SchemaMismatchError(
                f"Record field {key!r} holds a {type(field_value).__name__}; records must be flat",
                combination_id=combination_id,
                fields=list(record),
            )

    missing = [f for f in REQUIRED_FIELDS if f not in record]
    if missing:
        raise SchemaMismatchError(
            f"Record is missing required fields {missing}",
            combination_id=combination_id,
            fields=list(record),
        )
    return record


class RecordSchema:
    """Field set fixed by the first record and enforced on the rest."""

    def __init__(self):
        self.fields: Optional[List[str]] = None

    def check(self, record: Dict[str, Any]) -> Dict[str, Any]:
        if self.fields is None:
            self.fields = list(record)
            return record
        if set(record) != set(self.fields):
            extra = sorted(set(record) - set(self.fields))
            missing = sorted(set(self.fields) - set(record))
            raise SchemaMismatchError(
                f"Record fields differ from the first record (extra={extra}, missing={missing})",
                combination_id=record.get("combination_id"),
                fields=list(record),
            )
        return record


def stack_records(records: List[Dict[str, Any]], fields: Optional[List[str]] = None) -> pd.DataFrame:
    """Row-bind records that already share one schema."""
    if not records:
        return pd.DataFrame(columns=list(fields or REQUIRED_FIELDS))
    columns = list(fields or records[0])
    return pd.DataFrame.from_records(records, columns=columns)
