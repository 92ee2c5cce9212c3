from __future__ import annotations

import dataclasses

import pytest

from donorhub.models import Contact, IdentityMap, db
from donorhub.pipeline.lineage import seed_source_systems
from donorhub.pipeline.raw_loader import RawIngestionLoader
from donorhub.pipeline.resolver import IdentityResolver
from donorhub.pipeline.serving import ServingViewBuilder
from donorhub.pipeline.settings import PipelineSettings
from donorhub.pipeline.storage import LocalBlobStore
from donorhub.pipeline.transform import EntityTransformer


@pytest.fixture
def settings(app):
    """Pipeline settings with tiny batches and no pacing."""
    return dataclasses.replace(
        PipelineSettings.from_app(app),
        batch_size=2,
        batch_delay_ms=0,
        max_retries=3,
        retry_base_ms=0,
        retry_max_ms=0,
        materialize_delay_ms=0,
        ingest_workers=1,
    )


@pytest.fixture
def blob_store(app, tmp_path):
    root = tmp_path / "blobs"
    root.mkdir()
    app.config["PIPELINE_STORAGE_BACKEND"] = "local"
    app.config["PIPELINE_STORAGE_ROOT"] = str(root)
    yield LocalBlobStore(root)
    app.config["PIPELINE_STORAGE_ROOT"] = None


@pytest.fixture
def write_blob(blob_store):
    def _write(path: str, text: str, encoding: str = "utf-8") -> str:
        blob_store.write_bytes(path, text.encode(encoding))
        return path

    return _write


@pytest.fixture
def seeded_sources(settings):
    return seed_source_systems(settings.sources.values())


@pytest.fixture
def contact_factory(app):
    """Insert silver contacts directly, bypassing raw ingestion."""

    def _create(source_system: str, source_id: str, **fields) -> Contact:
        contact = Contact(source_system=source_system, source_id=source_id, **fields)
        db.session.add(contact)
        db.session.commit()
        return contact

    return _create


@pytest.fixture
def identity_rows(app):
    def _rows() -> dict[tuple[str, str], IdentityMap]:
        return {(row.source_system, row.source_id): row for row in db.session.scalars(db.select(IdentityMap))}

    return _rows


@pytest.fixture
def ingest(blob_store, settings, write_blob):
    """Write a blob and load it into the raw layer."""

    def _ingest(path: str, text: str):
        write_blob(path, text)
        return RawIngestionLoader(blob_store, settings, sleep=lambda _seconds: None).ingest(path)

    return _ingest


@pytest.fixture
def build_serving(settings):
    """Transform, resolve and define every serving view over what is in raw."""

    def _build():
        EntityTransformer(settings, sleep=lambda _seconds: None).transform_all()
        IdentityResolver(settings, sleep=lambda _seconds: None).resolve_identities()
        return ServingViewBuilder(settings).define_views()

    return _build
