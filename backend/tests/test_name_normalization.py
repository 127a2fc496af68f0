"""Tests for the product-name normalization data migration."""

import pytest
from sqlalchemy import select

from bulkops.core.exceptions import InputValidationError, RollbackUnavailableError
from bulkops.db.models.product import Product
from bulkops.jobs.name_normalization import ProductNameNormalization, normalize_name
from bulkops.services import job_service
from bulkops.services.job_runner import RunOutcome

MIGRATION = "collapse_product_name_whitespace"


def names(session):
    session.expire_all()
    return [p.name for p in session.execute(select(Product).order_by(Product.id)).scalars()]


def test_normalize_name():
    assert normalize_name("  Blue   Widget \t XL ") == "Blue Widget XL"


def test_unknown_migration_rejected():
    with pytest.raises(InputValidationError, match=MIGRATION):
        ProductNameNormalization().preflight("drop_everything")


def test_migration_runs_and_rolls_back(session, session_factory, make_runner):
    originals = ["  Blue   Widget ", "Red Widget", "Green\tWidget", " "]
    session.add_all(
        [Product(sku=f"N-{i}", name=name) for i, name in enumerate(originals)]
    )
    session.commit()

    job_id = job_service.submit_job(
        session,
        job_kind="product_name_normalization",
        input_reference=MIGRATION,
        actor_id="admin-1",
        configuration={"batch_size": 2},
    )
    assert make_runner().run(job_id) is RunOutcome.COMPLETED

    assert names(session) == ["Blue Widget", "Red Widget", "Green Widget", " "]
    snapshot = job_service.get_job_snapshot(session, job_id)
    assert snapshot.job.invalid_count == 1
    assert snapshot.job.metrics["stats"] == {"changed": 2, "unchanged": 1, "invalid": 1}

    job_service.rollback_job(session, job_id, "admin-1")
    assert names(session) == originals


def test_dry_run_reports_counts_without_changing_names(session, make_runner):
    originals = ["  Blue   Widget ", "Red Widget", "Green\tWidget", " "]
    session.add_all(
        [Product(sku=f"N-{i}", name=name) for i, name in enumerate(originals)]
    )
    session.commit()

    job_id = job_service.submit_job(
        session,
        job_kind="product_name_normalization",
        input_reference=MIGRATION,
        actor_id="admin-1",
        configuration={"batch_size": 2, "dry_run": True},
    )
    assert make_runner().run(job_id) is RunOutcome.COMPLETED

    assert names(session) == originals
    snapshot = job_service.get_job_snapshot(session, job_id)
    job = snapshot.job
    assert job.processed_records == 4
    assert job.current_batch_number == 2
    assert job.metrics["dry_run"] is True
    assert job.metrics["stats"] == {"changed": 2, "unchanged": 1, "invalid": 1}
    assert job.rollback_data == []
    assert snapshot.recent_logs[-1].message.startswith("Dry run completed")

    with pytest.raises(RollbackUnavailableError):
        job_service.rollback_job(session, job_id, "admin-1")
