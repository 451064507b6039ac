"""
Unit Tests for the Canonical Lot Mapping

Tests:
1. Aligned lot number formula
2. Metadata filled from the job id
3. Every consumer gets the same lot number, usage grows by one per call
4. Minting for job ids without a lot sequence
5. Create-if-absent under a stale read
6. Degraded results when the mapping store is unreachable
"""
import re

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from lotline.exceptions import StoreUnavailable
from lotline.models.lot import GeneratedLotNumber, JobLotMapping, JobLotUsage
from lotline.schemas.lot import LotConsumer, LotSource
from lotline.services.job_id_codec import decode_job_id
from lotline.services.lot_generator import validate_lot_code
from lotline.services.lot_mapping import (
    MINT_TASK_ID,
    JobLotMetadata,
    LotMappingService,
    SqlLotMappingStore,
    aligned_lot_number,
    fallback_lot_number,
    mint_sequential_lot,
    resolve_job_metadata,
    resolve_lot_number,
)

from tests.doubles import UnavailableMappingStore

JOB_ID = "AERO-2025-001-item-0-lot-3"
PART = "1606P-AEROSPACE"
ORDER = "AERO-2025-001"


def usage_count(db, job_id):
    return db.query(JobLotUsage).filter(JobLotUsage.job_id == job_id).count()


@pytest.mark.unit
class TestAlignedLotNumber:

    def test_formula(self):
        assert aligned_lot_number(PART, ORDER, 3) == "1606PA-025001-LOT-003"

    def test_sequence_wider_than_three_digits(self):
        assert aligned_lot_number(PART, ORDER, 1234) == "1606PA-025001-LOT-1234"

    def test_lowercase_is_dropped(self):
        assert aligned_lot_number("1606P", "5bnutGOVuMfTELJ6U7GW", 2) == "1606P-J6U7GW-LOT-002"

    def test_missing_metadata(self):
        assert aligned_lot_number(None, None, 1) == "--LOT-001"

    def test_fallback_shape(self):
        assert re.match(r"^LOT-\d{8}-\d{4}$", fallback_lot_number())


@pytest.mark.unit
class TestResolveJobMetadata:

    def test_fills_from_job_id(self):
        metadata = resolve_job_metadata(decode_job_id(JOB_ID), None, None, None)
        assert metadata == JobLotMetadata(part_number="AERO", part_name="AERO", order_id=ORDER)

    def test_supplied_values_win(self):
        metadata = resolve_job_metadata(decode_job_id(JOB_ID), PART, "Bracket", "OTHER-1")
        assert metadata == JobLotMetadata(part_number=PART, part_name="Bracket", order_id="OTHER-1")

    def test_empty_strings_count_as_absent(self):
        metadata = resolve_job_metadata(decode_job_id(JOB_ID), "", "", "")
        assert metadata.order_id == ORDER
        assert metadata.part_number == "AERO"

    def test_opaque_job_id(self):
        metadata = resolve_job_metadata(None, PART, None, None)
        assert metadata == JobLotMetadata(part_number=PART, part_name=PART, order_id=None)


@pytest.mark.unit
class TestResolve:

    def test_first_call_derives_and_persists(self, db_session, mapping_service):
        resolution = mapping_service.resolve(JOB_ID, PART, "Bracket", ORDER, LotConsumer.JOB_CREATION)

        assert resolution.lot_number == "1606PA-025001-LOT-003"
        assert resolution.source == LotSource.DERIVED
        assert resolution.persisted
        assert not resolution.degraded

        mapping = db_session.get(JobLotMapping, JOB_ID)
        assert mapping.lot_number == "1606PA-025001-LOT-003"
        assert mapping.part_name == "Bracket"
        assert mapping.usage_history[0].component == "job_creation"
        assert "aligned with job lot 3" in mapping.usage_history[0].notes

    def test_derivation_does_not_touch_counters(self, db_session, mapping_service):
        from lotline.models.lot import LotSequenceCounter

        mapping_service.resolve(JOB_ID, PART, None, ORDER, LotConsumer.JOB_CREATION)
        assert db_session.query(LotSequenceCounter).count() == 0
        assert db_session.query(GeneratedLotNumber).count() == 0

    def test_all_consumers_see_the_same_lot(self, db_session, mapping_service):
        lots = [
            mapping_service.resolve(JOB_ID, PART, None, ORDER, consumer).lot_number
            for consumer in LotConsumer
        ]
        assert len(set(lots)) == 1
        assert usage_count(db_session, JOB_ID) == len(LotConsumer)

    def test_later_metadata_does_not_change_stored_lot(self, mapping_service):
        first = mapping_service.resolve(JOB_ID, PART, None, ORDER, LotConsumer.JOB_CREATION)
        second = mapping_service.resolve(JOB_ID, "OTHER-PART", None, "ORD-9", LotConsumer.ROUTING_SHEET)

        assert second.lot_number == first.lot_number
        assert second.source == LotSource.EXISTING

    def test_read_path_appends_retrieval_entry(self, db_session, mapping_service):
        mapping_service.resolve(JOB_ID, PART, None, ORDER, LotConsumer.JOB_CREATION)
        mapping_service.resolve(JOB_ID, PART, None, ORDER, "routing_sheet")

        mapping = mapping_service.get_mapping(JOB_ID)
        assert [u.component for u in mapping.usage_history] == ["job_creation", "routing_sheet"]
        assert mapping.usage_history[1].notes == "Lot number retrieved by routing_sheet"

    def test_legacy_and_clean_ids_derive_the_same_lot(self, mapping_service):
        legacy = mapping_service.resolve(
            "5bnutGOVuMfTELJ6U7GW-item-item-175142835422-lot-2", "1606P", None, None,
            LotConsumer.TRACEABILITY_TASK,
        )
        clean = mapping_service.resolve(
            "5bnutGOVuMfTELJ6U7GW-item-175142835422-lot-2", "1606P", None, None,
            LotConsumer.TRACEABILITY_TASK,
        )
        assert legacy.lot_number == clean.lot_number == "1606P-J6U7GW-LOT-002"

    def test_legacy_id_stores_clean_order_id(self, db_session, mapping_service):
        job_id = "5bnutGOVuMfTELJ6U7GW-item-item-175142835422-lot-2"
        mapping_service.resolve(job_id, None, None, None, LotConsumer.JOB_CREATION)

        mapping = db_session.get(JobLotMapping, job_id)
        assert mapping.order_id == "5bnutGOVuMfTELJ6U7GW"
        assert mapping.part_number == "5bnutGOVuMfTELJ6U7GW"

    def test_job_id_without_lot_mints_a_code(self, db_session, mapping_service):
        resolution = mapping_service.resolve("JOB-12345", PART, None, None, LotConsumer.TRACEABILITY_TASK)

        assert resolution.source == LotSource.MINTED
        assert validate_lot_code(resolution.lot_number)

        record = db_session.query(GeneratedLotNumber).one()
        assert record.lot_code == resolution.lot_number
        assert record.job_id == "JOB-12345"
        assert record.task_id == MINT_TASK_ID

        again = mapping_service.resolve("JOB-12345", None, None, None, LotConsumer.MATERIAL_APPROVAL)
        assert again.lot_number == resolution.lot_number
        assert db_session.query(GeneratedLotNumber).count() == 1

    def test_lot_zero_is_embedded(self, mapping_service):
        resolution = mapping_service.resolve("ORD-1-item-0-lot-0", "P1", None, None, LotConsumer.JOB_CREATION)
        assert resolution.lot_number == "P1-ORD1-LOT-000"
        assert resolution.source == LotSource.DERIVED

    def test_unknown_consumer_rejected(self, mapping_service):
        with pytest.raises(ValueError):
            mapping_service.resolve(JOB_ID, PART, None, ORDER, "label_printer")

    def test_lost_mapping_re_derives_same_value(self, db_session, mapping_service):
        first = mapping_service.resolve(JOB_ID, PART, None, ORDER, LotConsumer.JOB_CREATION)

        db_session.query(JobLotUsage).delete()
        db_session.query(JobLotMapping).delete()
        db_session.commit()

        second = mapping_service.resolve(JOB_ID, PART, None, ORDER, LotConsumer.ROUTING_SHEET)
        assert second.lot_number == first.lot_number
        assert second.source == LotSource.DERIVED


class StaleReadMappingStore(SqlLotMappingStore):
    """Simulates losing the race: the lookup misses a mapping that already exists."""

    def get_lot_number(self, job_id):
        return None


class FailingUsageMappingStore(SqlLotMappingStore):
    def append_usage(self, job_id, component, notes=None):
        raise StoreUnavailable("job_lot_mappings", "usage append failed")


@pytest.mark.unit
class TestCreateIfAbsent:

    def test_created_value_returned_when_post_commit_read_fails(self, db_session, generator, monkeypatch):
        committed = {"flag": False}
        real_query = db_session.query

        def query(*entities, **kwargs):
            if committed["flag"]:
                raise OperationalError("SELECT", {}, Exception("connection lost"))
            return real_query(*entities, **kwargs)

        def on_commit(session):
            committed["flag"] = True

        monkeypatch.setattr(db_session, "query", query)
        event.listen(db_session, "after_commit", on_commit)
        try:
            service = LotMappingService(SqlLotMappingStore(db_session), generator)
            resolution = service.resolve("JOB-777", PART, None, None, LotConsumer.JOB_CREATION)
        finally:
            event.remove(db_session, "after_commit", on_commit)
            committed["flag"] = False

        assert resolution.source == LotSource.MINTED
        assert resolution.persisted
        assert db_session.get(JobLotMapping, "JOB-777").lot_number == resolution.lot_number

    def test_second_create_keeps_first_value(self, db_session):
        store = SqlLotMappingStore(db_session)
        metadata = JobLotMetadata(part_number=PART, part_name=PART, order_id=ORDER)

        assert store.create_if_absent("JOB-1", "LOT-A", metadata, "job_creation", "first") == ("LOT-A", True)
        assert store.create_if_absent("JOB-1", "LOT-B", metadata, "routing_sheet", "second") == ("LOT-A", False)
        assert usage_count(db_session, "JOB-1") == 1

    def test_race_loser_returns_winner_value(self, db_session, generator):
        store = SqlLotMappingStore(db_session)
        metadata = JobLotMetadata(part_number=PART, part_name=PART, order_id=None)
        store.create_if_absent("JOB-12345", "WINNER-LOT", metadata, "job_creation", "winner")

        service = LotMappingService(StaleReadMappingStore(db_session), generator)
        resolution = service.resolve("JOB-12345", PART, None, None, LotConsumer.ROUTING_SHEET)

        assert resolution.lot_number == "WINNER-LOT"
        assert resolution.source == LotSource.EXISTING
        assert db_session.get(JobLotMapping, "JOB-12345").lot_number == "WINNER-LOT"
        assert usage_count(db_session, "JOB-12345") == 2
        # The loser's minted code stays in the audit log, unmapped
        assert db_session.query(GeneratedLotNumber).count() == 1

    def test_append_usage_for_unmapped_job(self, db_session):
        assert SqlLotMappingStore(db_session).append_usage("NOPE", "routing_sheet") is False


@pytest.mark.unit
class TestDegraded:

    def test_derived_when_store_unavailable(self, generator, caplog):
        service = LotMappingService(UnavailableMappingStore(), generator)
        resolution = service.resolve(JOB_ID, PART, None, ORDER, LotConsumer.ROUTING_SHEET)

        assert resolution.lot_number == "1606PA-025001-LOT-003"
        assert resolution.source == LotSource.DEGRADED_DERIVED
        assert resolution.degraded
        assert not resolution.persisted
        assert any(getattr(r, "degraded", False) for r in caplog.records)

    def test_random_when_nothing_to_derive(self, generator):
        service = LotMappingService(UnavailableMappingStore(), generator)
        resolution = service.resolve("JOB-12345", PART, None, None, LotConsumer.ROUTING_SHEET)

        assert re.match(r"^LOT-\d{8}-\d{4}$", resolution.lot_number)
        assert resolution.source == LotSource.DEGRADED_RANDOM
        assert not resolution.persisted

    def test_degraded_derived_matches_later_persisted_value(self, db_session, generator, mapping_service):
        degraded = LotMappingService(UnavailableMappingStore(), generator).resolve(
            JOB_ID, PART, None, ORDER, LotConsumer.JOB_CREATION
        )
        recovered = mapping_service.resolve(JOB_ID, PART, None, ORDER, LotConsumer.JOB_CREATION)
        assert recovered.lot_number == degraded.lot_number
        assert recovered.persisted

    def test_failed_retrieval_append_still_returns_stored_value(self, db_session, generator, mapping_service):
        created = mapping_service.resolve(JOB_ID, PART, None, ORDER, LotConsumer.JOB_CREATION)

        service = LotMappingService(FailingUsageMappingStore(db_session), generator)
        resolution = service.resolve(JOB_ID, PART, None, ORDER, LotConsumer.ROUTING_SHEET)

        assert resolution.lot_number == created.lot_number
        assert resolution.source == LotSource.EXISTING
        assert resolution.persisted
        assert usage_count(db_session, JOB_ID) == 1


@pytest.mark.unit
class TestRecordUsage:

    def test_records_for_mapped_job(self, db_session, mapping_service):
        mapping_service.resolve(JOB_ID, PART, None, ORDER, LotConsumer.JOB_CREATION)

        assert mapping_service.record_usage(JOB_ID, LotConsumer.MATERIAL_APPROVAL, "approved 6061 bar")
        mapping = mapping_service.get_mapping(JOB_ID)
        assert mapping.usage_history[-1].component == "material_approval"
        assert mapping.usage_history[-1].notes == "approved 6061 bar"

    def test_unmapped_job(self, mapping_service):
        assert mapping_service.record_usage("JOB-404", LotConsumer.ROUTING_SHEET) is False

    def test_store_unavailable(self, generator):
        service = LotMappingService(UnavailableMappingStore(), generator)
        assert service.record_usage(JOB_ID, LotConsumer.ROUTING_SHEET) is False


@pytest.mark.unit
class TestSessionEntryPoints:

    def test_resolve_lot_number(self, db_session):
        lot = resolve_lot_number(db_session, JOB_ID, PART, None, ORDER, "job_creation")
        assert lot == "1606PA-025001-LOT-003"
        assert resolve_lot_number(db_session, JOB_ID, None, None, None, "routing_sheet") == lot

    def test_list_mappings(self, mapping_service):
        mapping_service.resolve(JOB_ID, PART, None, ORDER, LotConsumer.JOB_CREATION)
        mapping_service.resolve("JOB-12345", PART, None, None, LotConsumer.JOB_CREATION)

        assert {m.job_id for m in mapping_service.list_mappings()} == {JOB_ID, "JOB-12345"}

    def test_mint_sequential_lot(self, db_session):
        assert mint_sequential_lot(db_session, "1606P", ORDER) == 1
        assert mint_sequential_lot(db_session, "1606P", ORDER) == 2
        assert mint_sequential_lot(db_session, "1606P") == 1
