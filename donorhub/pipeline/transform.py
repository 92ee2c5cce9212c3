"""
Entity transformer: ``raw_records`` -> ``silver_*``.

Raw payloads are read per mapping in id order (keyset pagination), mapped and
upserted on the natural key ``(source_system, source_id)``. Re-running a
transform over already processed lineages updates rows in place and never
duplicates them.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Mapping

from flask import current_app, has_app_context
from sqlalchemy import select

from donorhub.models import FileLineage, LineageStatus, RawRecord, SourceSystem, db

from .coercion import Coercer
from .db import statement_timeout
from .mappings import ENTITY_ORDER, MAPPINGS, EntityMapping, RowView, mappings_for
from .metrics import record_batch_duration
from .retry import retry_with_backoff
from .settings import PipelineSettings

_KEY_CHUNK = 500


@dataclass
class MappingCounts:
    mapping: str
    source: str
    entity: str
    files: int = 0
    rows_read: int = 0
    rows_skipped: int = 0
    inserted: int = 0
    updated: int = 0
    invalid_values: dict[str, int] = field(default_factory=dict)

    @property
    def written(self) -> int:
        return self.inserted + self.updated

    def as_dict(self) -> dict[str, object]:
        return {
            "mapping": self.mapping,
            "source": self.source,
            "entity": self.entity,
            "files": self.files,
            "rows_read": self.rows_read,
            "rows_skipped": self.rows_skipped,
            "inserted": self.inserted,
            "updated": self.updated,
            "invalid_values": dict(self.invalid_values),
        }


@dataclass
class TransformSummary:
    results: list[MappingCounts] = field(default_factory=list)

    def by_entity(self) -> dict[str, dict[str, int]]:
        totals: dict[str, Counter] = {}
        for result in self.results:
            bucket = totals.setdefault(result.entity, Counter())
            bucket["inserted"] += result.inserted
            bucket["updated"] += result.updated
            bucket["rows_skipped"] += result.rows_skipped
            bucket["invalid_values"] += sum(result.invalid_values.values())
        return {
            entity: dict(totals[entity])
            for entity in ENTITY_ORDER
            if entity in totals
        }

    def counts(self) -> dict[str, int]:
        return {
            "mappings": len(self.results),
            "rows_read": sum(result.rows_read for result in self.results),
            "inserted": sum(result.inserted for result in self.results),
            "updated": sum(result.updated for result in self.results),
            "rows_skipped": sum(result.rows_skipped for result in self.results),
            "invalid_values": sum(sum(result.invalid_values.values()) for result in self.results),
        }

    def as_dict(self) -> dict[str, object]:
        return {
            "counts": self.counts(),
            "entities": self.by_entity(),
            "mappings": [result.as_dict() for result in self.results],
        }


def select_entities(only: str | None = None, from_entity: str | None = None) -> list[str]:
    """Entity kinds to run, honouring ``--only`` and ``--from``."""

    for name in (only, from_entity):
        if name and name not in ENTITY_ORDER:
            raise ValueError(f"Unknown entity '{name}'. Expected one of: {', '.join(ENTITY_ORDER)}")
    if only:
        return [only]
    if from_entity:
        return list(ENTITY_ORDER[ENTITY_ORDER.index(from_entity) :])
    return list(ENTITY_ORDER)


class EntityTransformer:
    def __init__(
        self,
        settings: PipelineSettings,
        *,
        registry: Iterable[EntityMapping] = MAPPINGS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.registry = tuple(registry)
        self.sleep = sleep

    # -- raw access --------------------------------------------------------

    def _loaded_files(self, source: str) -> list[tuple[str, str]]:
        """``(lineage_id, path relative to source folder)`` for loaded files, oldest first."""

        rows = db.session.execute(
            select(FileLineage.id, FileLineage.blob_path)
            .join(SourceSystem, SourceSystem.id == FileLineage.source_id)
            .where(SourceSystem.name == source, FileLineage.status == LineageStatus.LOADED)
            .order_by(FileLineage.loaded_at, FileLineage.started_at)
        )
        files = []
        for lineage_id, blob_path in rows:
            parts = blob_path.split("/", 1)
            files.append((lineage_id, parts[1] if len(parts) == 2 else blob_path))
        return files

    def _iter_raw(self, lineage_ids: list[str]) -> Iterator[list[RawRecord]]:
        last_id = 0
        while lineage_ids:
            with statement_timeout(self.settings.bulk_timeout_seconds):
                batch = list(
                    db.session.scalars(
                        select(RawRecord)
                        .where(RawRecord.lineage_id.in_(lineage_ids), RawRecord.id > last_id)
                        .order_by(RawRecord.id)
                        .limit(self.settings.batch_size)
                    )
                )
            if not batch:
                return
            last_id = batch[-1].id
            yield batch
            if len(batch) < self.settings.batch_size:
                return

    def _reader(self, source: str) -> Callable[[Callable[[str], bool]], Iterator[Mapping[str, object]]]:
        files = self._loaded_files(source)

        def read(predicate: Callable[[str], bool]) -> Iterator[Mapping[str, object]]:
            lineage_ids = [lineage_id for lineage_id, path in files if predicate(path)]
            for batch in self._iter_raw(lineage_ids):
                for record in batch:
                    yield record.payload_json

        return read

    # -- writes ------------------------------------------------------------

    def _upsert(self, mapping: EntityMapping, rows: list[dict[str, object]]) -> tuple[int, int]:
        model = mapping.model
        by_key: dict[str, dict[str, object]] = {}
        for row in rows:
            by_key[str(row["source_id"])] = row

        existing = {}
        keys = list(by_key)
        for start in range(0, len(keys), _KEY_CHUNK):
            chunk = keys[start : start + _KEY_CHUNK]
            for obj in db.session.scalars(
                select(model).where(model.source_system == mapping.source, model.source_id.in_(chunk))
            ):
                existing[obj.source_id] = obj

        inserted = updated = 0
        for key, row in by_key.items():
            obj = existing.get(key)
            if obj is None:
                db.session.add(model(source_system=mapping.source, **row))
                inserted += 1
                continue
            for attr, value in row.items():
                setattr(obj, attr, value)
            updated += 1
        return inserted, updated

    # -- stages ------------------------------------------------------------

    def run_mapping(self, mapping: EntityMapping) -> MappingCounts:
        counts = MappingCounts(mapping.name, mapping.source, mapping.entity)
        files = [(lineage_id, path) for lineage_id, path in self._loaded_files(mapping.source) if mapping.matches(path)]
        counts.files = len(files)
        if not files:
            return counts

        lookups = mapping.prepare(self._reader(mapping.source)) if mapping.prepare else {}
        coercer = Coercer()
        batch_no = 0
        for batch in self._iter_raw([lineage_id for lineage_id, _ in files]):
            batch_no += 1
            built: list[dict[str, object]] = []
            for record in batch:
                counts.rows_read += 1
                view = RowView(
                    record.payload_json,
                    coercer=coercer,
                    entity=mapping.entity,
                    record_hash=record.record_hash,
                    lookups=lookups,
                )
                produced = mapping.build(view)
                if not produced:
                    counts.rows_skipped += 1
                    continue
                for row in produced if isinstance(produced, list) else [produced]:
                    row["lineage_id"] = record.lineage_id
                    row["raw_record_id"] = record.id
                    built.append(row)

            def _write(built=built) -> tuple[int, int]:
                with statement_timeout(self.settings.bulk_timeout_seconds):
                    result = self._upsert(mapping, built)
                    db.session.flush()
                db.session.commit()
                return result

            started = time.perf_counter()
            inserted, updated = retry_with_backoff(
                _write,
                settings=self.settings,
                label=f"transform:{mapping.name}#{batch_no}",
                sleep=self.sleep,
            )
            record_batch_duration("transform", time.perf_counter() - started)
            counts.inserted += inserted
            counts.updated += updated
            if self.settings.batch_delay_ms:
                self.sleep(self.settings.batch_delay_ms / 1000.0)

        counts.invalid_values = coercer.as_dict()
        if has_app_context():
            current_app.logger.info(
                "Transformed %s: %s read, %s inserted, %s updated, %s skipped",
                mapping.name,
                counts.rows_read,
                counts.inserted,
                counts.updated,
                counts.rows_skipped,
                extra={"pipeline_stage": "transform", "pipeline_mapping": mapping.name},
            )
            if counts.invalid_values:
                current_app.logger.warning(
                    "%s dropped invalid values: %s",
                    mapping.name,
                    counts.invalid_values,
                    extra={"pipeline_stage": "transform", "pipeline_mapping": mapping.name},
                )
        return counts

    def transform(self, source: str, entity: str) -> TransformSummary:
        """Run every mapping for one source and entity kind."""

        summary = TransformSummary()
        for mapping in mappings_for(source=source, entity=entity, registry=self.registry):
            summary.results.append(self.run_mapping(mapping))
        return summary

    def transform_all(
        self,
        *,
        source: str | None = None,
        only: str | None = None,
        from_entity: str | None = None,
        on_result: Callable[[MappingCounts], None] | None = None,
    ) -> TransformSummary:
        entities = select_entities(only, from_entity)
        active = {policy.name for policy in self.settings.active_sources()}
        summary = TransformSummary()
        for entity in entities:
            for mapping in mappings_for(source=source, entity=entity, registry=self.registry):
                if mapping.source not in active:
                    continue
                result = self.run_mapping(mapping)
                summary.results.append(result)
                if on_result:
                    on_result(result)
        return summary
