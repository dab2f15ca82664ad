"""
Планирование партиций таблицы транзакций

Чистые функции без обращения к БД: построение списка диапазонов,
рендеринг DDL и проверка покрытия (разрывы и пересечения).
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence, Tuple

GRANULARITY_DAY = "day"
GRANULARITY_MONTH = "month"


@dataclass(frozen=True)
class PartitionSpec:
    """Партиция, покрывающая полуинтервал [range_start, range_end)"""
    name: str
    range_start: datetime
    range_end: datetime

    def covers(self, moment: datetime) -> bool:
        return self.range_start <= moment < self.range_end

    def overlaps(self, other: "PartitionSpec") -> bool:
        return self.range_start < other.range_end and other.range_start < self.range_end


def floor_boundary(moment: datetime, granularity: str) -> datetime:
    """Начало дня (или месяца), которому принадлежит момент"""
    day_start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if granularity == GRANULARITY_DAY:
        return day_start
    if granularity == GRANULARITY_MONTH:
        return day_start.replace(day=1)
    raise ValueError(f"Unsupported partition granularity: {granularity}")


def next_boundary(boundary: datetime, granularity: str) -> datetime:
    if granularity == GRANULARITY_DAY:
        return boundary + timedelta(days=1)
    if granularity == GRANULARITY_MONTH:
        if boundary.month == 12:
            return boundary.replace(year=boundary.year + 1, month=1)
        return boundary.replace(month=boundary.month + 1)
    raise ValueError(f"Unsupported partition granularity: {granularity}")


def partition_name(table: str, range_start: datetime, granularity: str) -> str:
    if granularity == GRANULARITY_MONTH:
        return f"{table}_{range_start:%Y_%m}"
    return f"{table}_{range_start:%Y_%m_%d}"


def default_partition_name(table: str) -> str:
    return f"{table}_default"


def plan_partitions(
    table: str,
    start: datetime,
    end: datetime,
    granularity: str = GRANULARITY_DAY
) -> List[PartitionSpec]:
    """
    Выровненные по границам дня (месяца) партиции, покрывающие [start, end).
    Соседние партиции стыкуются без разрывов и пересечений.
    """
    if end <= start:
        return []

    plan = []
    boundary = floor_boundary(start, granularity)
    while boundary < end:
        upper = next_boundary(boundary, granularity)
        plan.append(PartitionSpec(
            name=partition_name(table, boundary, granularity),
            range_start=boundary,
            range_end=upper
        ))
        boundary = upper
    return plan


def _quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _literal(moment: datetime) -> str:
    return f"'{moment:%Y-%m-%d %H:%M:%S}'"


def render_ddl(spec: PartitionSpec, table: str) -> str:
    return (
        f"CREATE TABLE IF NOT EXISTS {_quote_ident(spec.name)} "
        f"PARTITION OF {_quote_ident(table)} "
        f"FOR VALUES FROM ({_literal(spec.range_start)}) TO ({_literal(spec.range_end)})"
    )


def render_default_ddl(table: str) -> str:
    return (
        f"CREATE TABLE IF NOT EXISTS {_quote_ident(default_partition_name(table))} "
        f"PARTITION OF {_quote_ident(table)} DEFAULT"
    )


def render_backfill_ddl(spec: PartitionSpec, table: str, key: str = "created_at") -> List[str]:
    """
    Партиция для диапазона, строки которого уже лежат в catch-all.

    PostgreSQL не создаёт PARTITION OF, пока default партиция содержит
    строки этого диапазона, поэтому таблица создаётся отдельно, строки
    переносятся из catch-all и таблица присоединяется через ATTACH PARTITION.
    Выполняется в одной транзакции.
    """
    parent = _quote_ident(table)
    name = _quote_ident(spec.name)
    default = _quote_ident(default_partition_name(table))
    column = _quote_ident(key)
    in_range = f"{column} >= {_literal(spec.range_start)} AND {column} < {_literal(spec.range_end)}"
    return [
        f"CREATE TABLE IF NOT EXISTS {name} (LIKE {parent} INCLUDING DEFAULTS INCLUDING CONSTRAINTS)",
        f"INSERT INTO {name} SELECT * FROM {default} WHERE {in_range}",
        f"DELETE FROM {default} WHERE {in_range}",
        (
            f"ALTER TABLE {parent} ATTACH PARTITION {name} "
            f"FOR VALUES FROM ({_literal(spec.range_start)}) TO ({_literal(spec.range_end)})"
        ),
    ]


def covering(specs: Iterable[PartitionSpec], moment: datetime) -> List[PartitionSpec]:
    return [spec for spec in specs if spec.covers(moment)]


def find_coverage_issues(
    specs: Sequence[PartitionSpec]
) -> Tuple[List[Tuple[datetime, datetime]], List[Tuple[str, str]]]:
    """
    Разрывы и пересечения на всей покрытой шкале времени.

    Returns:
        (gaps, overlaps): gaps: список (начало, конец) непокрытых интервалов,
        overlaps: пары имён пересекающихся партиций
    """
    ordered = sorted(specs, key=lambda s: (s.range_start, s.range_end))
    gaps = []
    overlaps = []

    covered_until: Optional[datetime] = None
    last: Optional[PartitionSpec] = None
    for spec in ordered:
        if last is not None:
            if spec.range_start > covered_until:
                gaps.append((covered_until, spec.range_start))
            elif spec.range_start < covered_until:
                overlaps.append((last.name, spec.name))
        if covered_until is None or spec.range_end > covered_until:
            covered_until = spec.range_end
            last = spec
    return gaps, overlaps
