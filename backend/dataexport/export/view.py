"""
Materialized view builder.

One projection pass over the filtered, sorted record source fills two
export-scoped tables:

- ``zexport_<job>``: one row per matching record (``seq`` keeps the requested
  sort order, ``row_id`` points back at the record) plus one integer counter per
  array field / questionnaire variable for flat formats
- ``zexport_<job>_locations``: every location id referenced by those records

The writer pages through ``zexport_<job>`` by ``seq`` and deletes what it has
consumed, so an empty table at the end means every record was written.
"""
import logging
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import Column, Integer, MetaData, String, Table, delete, distinct, func, inspect, insert, select
from sqlalchemy.orm import Session

from dataexport.core.database import QUERY_CHUNK, chunked
from dataexport.export.filters import NormalizedFilter
from dataexport.export.paths import FieldPath
from dataexport.models.record import Record, as_document

logger = logging.getLogger(__name__)

VIEW_PREFIX = "zexport_"


class RowProjector:
    """Minimal projection of one record: counters plus referenced location ids."""

    def __init__(self, counters: Dict[str, Callable[[dict], int]], location_paths: Iterable[str]):
        self.counters = counters
        self.location_paths = [FieldPath.parse(path) for path in location_paths]

    def project(self, document: dict) -> Tuple[Dict[str, int], Set[str]]:
        counts = {name: counter(document) for name, counter in self.counters.items()}
        location_ids = set()
        for path in self.location_paths:
            for value in path.iter_values(document):
                if isinstance(value, str) and value:
                    location_ids.add(value)
        return counts, location_ids


def view_table_name(job_id: str) -> str:
    return f"{VIEW_PREFIX}{job_id.replace('-', '')}"


class MaterializedView:
    def __init__(self, session: Session, job_id: str, counter_names: Iterable[str] = ()):
        self.session = session
        self.name = view_table_name(job_id)
        self.collection: Optional[str] = None
        # Counter names contain arbitrary paths; columns get positional names
        self.counter_columns = {name: f"c{index}" for index, name in enumerate(counter_names)}

        metadata = MetaData()
        self.table = Table(
            self.name,
            metadata,
            Column("seq", Integer, primary_key=True, autoincrement=True),
            Column("row_id", String, nullable=False),
            *[
                Column(column, Integer, nullable=False, default=0)
                for column in self.counter_columns.values()
            ],
        )
        self.locations_table = Table(
            f"{self.name}_locations",
            metadata,
            Column("location_id", String, nullable=False, index=True),
        )

    def create(self) -> None:
        connection = self.session.connection()
        self.table.create(bind=connection, checkfirst=True)
        self.locations_table.create(bind=connection, checkfirst=True)
        self.session.commit()
        logger.info(f"Created view {self.name}")

    def populate(self, source: NormalizedFilter, projector: RowProjector, batch_size: int) -> int:
        """Stream the matching records into the view; returns the number of rows."""
        statement = (
            select(Record.id, Record.data)
            .where(source.where)
            .order_by(*source.order_by)
            .execution_options(yield_per=batch_size)
        )

        self.collection = source.collection
        total = 0
        result = self.session.execute(statement)
        try:
            for partition in result.partitions(batch_size):
                rows = []
                location_rows = []
                for record_id, data in partition:
                    counts, location_ids = projector.project(as_document(record_id, data))

                    row = {"row_id": record_id}
                    for name, column in self.counter_columns.items():
                        row[column] = counts.get(name, 0)
                    rows.append(row)
                    location_rows.extend({"location_id": location_id} for location_id in location_ids)

                self.session.execute(insert(self.table), rows)
                if location_rows:
                    self.session.execute(insert(self.locations_table), location_rows)
                total += len(rows)
        finally:
            result.close()

        self.session.commit()
        logger.info(f"View {self.name} holds {total} row(s)")
        return total

    def maxima(self) -> Dict[str, int]:
        """Largest value of every counter, in one aggregate query."""
        if not self.counter_columns:
            return {}

        names = list(self.counter_columns)
        statement = select(*[func.max(self.table.c[self.counter_columns[name]]) for name in names])
        values = self.session.execute(statement).one()
        return {name: int(value or 0) for name, value in zip(names, values)}

    def distinct_location_ids(self) -> List[str]:
        statement = select(distinct(self.locations_table.c.location_id))
        return [location_id for (location_id,) in self.session.execute(statement)]

    def count(self) -> int:
        return self.session.execute(select(func.count()).select_from(self.table)).scalar_one()

    def next_batch(self, size: int) -> List[Tuple[int, str]]:
        statement = (
            select(self.table.c.seq, self.table.c.row_id)
            .order_by(self.table.c.seq)
            .limit(size)
        )
        return [(seq, row_id) for seq, row_id in self.session.execute(statement)]

    def documents(self, batch: List[Tuple[int, str]]) -> List[Optional[dict]]:
        """Documents for a batch, in view order; None where the record vanished."""
        ids = [row_id for _, row_id in batch]
        by_id = {}
        for chunk in chunked(ids, QUERY_CHUNK):
            statement = select(Record.id, Record.data).where(Record.id.in_(chunk))
            if self.collection is not None:
                statement = statement.where(Record.collection == self.collection)
            for record_id, data in self.session.execute(statement):
                by_id[record_id] = as_document(record_id, data)
        return [by_id.get(row_id) for row_id in ids]

    def consume(self, seqs: List[int]) -> None:
        if not seqs:
            return
        for chunk in chunked(seqs, QUERY_CHUNK):
            self.session.execute(delete(self.table).where(self.table.c.seq.in_(chunk)))
        self.session.commit()

    def exists(self) -> bool:
        return inspect(self.session.connection()).has_table(self.name)

    def drop(self) -> None:
        """Drop both view tables; safe to call more than once."""
        connection = self.session.connection()
        self.locations_table.drop(bind=connection, checkfirst=True)
        self.table.drop(bind=connection, checkfirst=True)
        self.session.commit()
        logger.info(f"Dropped view {self.name}")
