"""Table definitions used to validate payloads before they are written."""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from .errors import ConstraintViolationError


@dataclass
class Column:
    """Column definition. ``type`` is a Python type or tuple of types, None accepts anything."""

    name: str
    type: Any = None
    nullable: bool = True


@dataclass
class TableSchema:
    """Columns plus named CHECK constraints over a whole payload."""

    table_id: str
    columns: List[Column]
    checks: Dict[str, Callable[[Dict[str, Any]], bool]] = field(default_factory=dict)

    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]


class SchemaCatalog:
    """In-memory catalog; any object with a compatible ``validate`` can replace it."""

    def __init__(self):
        self.tables: Dict[str, TableSchema] = {}

    def create_table(
        self,
        table_id: str,
        columns: List[Column],
        checks: Optional[Dict[str, Callable[[Dict[str, Any]], bool]]] = None,
    ) -> TableSchema:
        if table_id in self.tables:
            raise ValueError(f"Table {table_id} already exists")
        schema = TableSchema(table_id=table_id, columns=list(columns), checks=dict(checks or {}))
        self.tables[table_id] = schema
        return schema

    def get_table(self, table_id: str) -> Optional[TableSchema]:
        return self.tables.get(table_id)

    def has_table(self, table_id: str) -> bool:
        return table_id in self.tables

    def validate(self, table_id: str, payload: Dict[str, Any]) -> None:
        """
        Check a payload against the table definition.

        Raises:
            ConstraintViolationError: unknown table or column, NULL in a NOT
                NULL column, wrong type, or a failed CHECK constraint.
        """
        schema = self.get_table(table_id)
        if schema is None:
            raise ConstraintViolationError(f"Invalid object name '{table_id}'", table_id=table_id)
        if not isinstance(payload, dict):
            raise ConstraintViolationError(
                f"Payload for {table_id} must be a mapping, got {type(payload).__name__}",
                table_id=table_id,
            )

        known = set(schema.column_names())
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ConstraintViolationError(
                f"Invalid column name(s) {unknown} for table {table_id}", table_id=table_id
            )

        for column in schema.columns:
            value = payload.get(column.name)
            if value is None:
                if not column.nullable:
                    raise ConstraintViolationError(
                        f"Cannot insert the value NULL into column '{column.name}', table '{table_id}'",
                        table_id=table_id,
                    )
                continue
            if column.type is not None and not isinstance(value, column.type):
                raise ConstraintViolationError(
                    f"Column '{column.name}' of {table_id} expects {_type_name(column.type)}, "
                    f"got {type(value).__name__}",
                    table_id=table_id,
                )

        for name, check in schema.checks.items():
            if not check(payload):
                raise ConstraintViolationError(
                    f"The statement conflicted with the CHECK constraint '{name}' on table '{table_id}'",
                    table_id=table_id,
                )


def _type_name(expected: Any) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__
