import threading
from datetime import date, datetime, timezone

import pytest

import fleetsync.sync as sync_module
from fleetsync.errors import CredentialError, RollupError, RosterFetchError
from fleetsync.models import (
    DailyDriverScore, DepartmentDailyScore, SafetyEvent, SyncLog, Vehicle
)
from fleetsync.schemas import ProviderVehicle

SYNC_NOW = datetime(2024, 2, 20, 12, 0, 0, tzinfo=timezone.utc)


def score_rows(db):
    db.expire_all()
    return sorted(
        (r.date, r.employee_id, r.vehicle_id, r.miles_driven, r.overall_score, r.brake_score)
        for r in db.query(DailyDriverScore).all()
    )


def rollup_rows(db):
    db.expire_all()
    return sorted(
        (r.date, r.department_id, r.active_drivers, r.total_miles, r.avg_overall_score,
         r.high_risk_drivers, r.medium_risk_drivers, r.low_risk_drivers)
        for r in db.query(DepartmentDailyScore).all()
    )


@pytest.fixture
def assigned_fleet(db, fleet, provider):
    """Three vehicles; X and Y have drivers in HVAC, Z has no assignment."""
    hvac = fleet.department("HVAC")
    driver_x = fleet.employee("EMP-X", department=hvac)
    driver_y = fleet.employee("EMP-Y", department=hvac)

    for provider_id, vin in (("fp-x", "VINX000000000001"), ("fp-y", "VINY000000000001"),
                             ("fp-z", "VINZ000000000001")):
        provider.add_vehicle(provider_id, vin)
        fleet.vehicle(vin, provider_id=provider_id)

    vehicles = {v.vin: v for v in db.query(Vehicle).all()}
    fleet.assignment(driver_x, vehicles["VINX000000000001"], date(2024, 1, 1), primary=True)
    fleet.assignment(driver_y, vehicles["VINY000000000001"], date(2024, 1, 1), primary=True)

    provider.add_event("fp-x", "evt-x1", "2024-02-15T09:00:00Z")
    provider.add_event("fp-y", "evt-y1", "2024-02-15T10:00:00Z", event_type="SPEEDING", severity="MEDIUM")
    provider.add_event("fp-y", "evt-y2", "2024-02-16T11:00:00Z", event_type="SEATBELT_OFF", severity="LOW")
    provider.add_event("fp-z", "evt-z1", "2024-02-15T12:00:00Z")

    provider.add_behavior("fp-x", "2024-02-15", miles=40.0, overall=60)
    provider.add_behavior("fp-y", "2024-02-15", miles=25.0, harsh=3, speeding=1)
    provider.add_behavior("fp-z", "2024-02-15", miles=12.0)

    return {"hvac": hvac, "x": driver_x, "y": driver_y, "vehicles": vehicles}


class TestSyncRun:
    """End-to-end runs against the fake provider."""

    @pytest.mark.asyncio
    async def test_full_run(self, db, orchestrator, assigned_fleet):
        result = await orchestrator.run("incremental", 30)

        assert result.success
        assert result.events_processed == 4
        assert result.vehicles_processed == 3

        run = db.get(SyncLog, result.sync_run_id)
        assert run.status == "completed"
        assert run.records_processed == 4
        assert run.sync_type == "incremental"
        assert run.meta["days_to_sync"] == 30

    @pytest.mark.asyncio
    async def test_scores_are_computed_and_attributed(self, db, orchestrator, assigned_fleet):
        await orchestrator.run("manual", 30)

        rows = {r.employee_id: r for r in db.query(DailyDriverScore).all()}
        assert set(rows) == {assigned_fleet["x"].id, assigned_fleet["y"].id}

        y_row = rows[assigned_fleet["y"].id]
        assert y_row.brake_score == 70
        assert y_row.speed_score == 85
        assert y_row.overall_score == pytest.approx(88.75)
        assert rows[assigned_fleet["x"].id].overall_score == 60

    @pytest.mark.asyncio
    async def test_department_rollup_follows_scores(self, db, orchestrator, assigned_fleet):
        await orchestrator.run("full", 30)

        rollups = db.query(DepartmentDailyScore).all()
        assert len(rollups) == 1
        assert rollups[0].department_id == assigned_fleet["hvac"].id
        assert rollups[0].active_drivers == 2
        assert rollups[0].high_risk_drivers == 1
        assert rollups[0].low_risk_drivers == 1

    @pytest.mark.asyncio
    async def test_unattributed_event_is_stored_without_driver(self, db, orchestrator, assigned_fleet):
        await orchestrator.run("incremental", 30)

        event = db.query(SafetyEvent).filter(SafetyEvent.provider_event_id == "evt-z1").one()
        assert event.employee_id is None

        z_vehicle = assigned_fleet["vehicles"]["VINZ000000000001"]
        assert db.query(DailyDriverScore).filter(DailyDriverScore.vehicle_id == z_vehicle.id).count() == 0

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, db, orchestrator, assigned_fleet):
        await orchestrator.run("incremental", 30)
        scores_first, rollups_first = score_rows(db), rollup_rows(db)
        events_first = db.query(SafetyEvent).count()

        await orchestrator.run("incremental", 30)

        assert score_rows(db) == scores_first
        assert rollup_rows(db) == rollups_first
        assert db.query(SafetyEvent).count() == events_first == 4
        assert db.query(SyncLog).filter(SyncLog.status == "completed").count() == 2

    @pytest.mark.asyncio
    async def test_one_vehicle_failing_does_not_stop_the_run(self, db, orchestrator, provider, assigned_fleet):
        provider.failing_vehicles.add("fp-x")

        result = await orchestrator.run("incremental", 30)

        assert result.success
        assert result.events_processed == 3
        failed = next(v for v in result.vehicles if v.vin == "VINX000000000001")
        assert failed.fetch_errors
        assert db.query(SafetyEvent).filter(SafetyEvent.provider_event_id.like("evt-y%")).count() == 2
        assert db.get(SyncLog, result.sync_run_id).status == "completed"

    @pytest.mark.asyncio
    async def test_invalid_event_is_counted_and_others_stored(self, db, orchestrator, provider, assigned_fleet):
        provider.add_event("fp-y", "evt-y3", "2024-02-17T08:00:00Z", event_type="LANE_DEPARTURE")

        result = await orchestrator.run("incremental", 30)

        y_result = next(v for v in result.vehicles if v.vin == "VINY000000000001")
        assert y_result.invalid_records == 1
        assert y_result.events_processed == 2
        assert not y_result.fetch_errors
        assert db.query(SafetyEvent).count() == 4

    @pytest.mark.asyncio
    async def test_storage_runs_off_the_event_loop(self, orchestrator, assigned_fleet, monkeypatch):
        threads = []
        original = sync_module.insert_safety_event

        def recording_insert(*args):
            threads.append(threading.current_thread().name)
            return original(*args)

        monkeypatch.setattr(sync_module, "insert_safety_event", recording_insert)

        await orchestrator.run("incremental", 30)

        assert len(threads) == 4
        assert all(name.startswith("fleetsync-db") for name in threads)

    @pytest.mark.asyncio
    async def test_roster_is_upserted(self, db, orchestrator, provider):
        provider.add_vehicle("fp-new", "VINNEW0000000001", make="Ford", model="Maverick", plate="NEW-1")

        result = await orchestrator.run("full", 7)

        vehicle = db.query(Vehicle).filter(Vehicle.vin == "VINNEW0000000001").one()
        assert vehicle.provider_vehicle_id == "fp-new"
        assert vehicle.license_plate == "NEW-1"
        assert result.vehicles_processed == 1
        assert result.events_processed == 0


class TestFatalFailures:
    """Run-aborting failures are recorded and re-raised."""

    @pytest.mark.asyncio
    async def test_credential_failure_marks_run_failed(self, db, orchestrator, provider):
        provider.token_status = 401

        with pytest.raises(CredentialError):
            await orchestrator.run("incremental", 7)

        run = db.query(SyncLog).one()
        assert run.status == "failed"
        assert "token" in run.error_message
        assert run.completed_at is not None

    @pytest.mark.asyncio
    async def test_roster_failure_marks_run_failed(self, db, orchestrator, provider):
        provider.roster_status = 500

        with pytest.raises(RosterFetchError):
            await orchestrator.run("incremental", 7)

        assert db.query(SyncLog).one().status == "failed"

    @pytest.mark.asyncio
    async def test_rollup_failure_marks_run_failed(self, db, orchestrator, assigned_fleet, monkeypatch):
        def broken_rollup(session, start, end):
            raise RuntimeError("aggregation broke")

        monkeypatch.setattr("fleetsync.sync.recompute_department_rollups", broken_rollup)

        with pytest.raises(RollupError):
            await orchestrator.run("incremental", 30)

        run = db.query(SyncLog).one()
        assert run.status == "failed"
        assert run.error_message == "Department rollup failed: aggregation broke"
        assert db.query(SafetyEvent).count() == 4

    @pytest.mark.asyncio
    async def test_storage_failure_during_vehicle_processing_marks_run_failed(
            self, db, orchestrator, assigned_fleet, monkeypatch):
        def broken_upsert(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr("fleetsync.sync.upsert_daily_driver_score", broken_upsert)

        with pytest.raises(RuntimeError, match="disk full"):
            await orchestrator.run("incremental", 30)

        run = db.query(SyncLog).one()
        assert run.status == "failed"
        assert run.error_message == "disk full"
        assert db.query(DepartmentDailyScore).count() == 0

    @pytest.mark.asyncio
    async def test_invalid_request_does_not_open_a_run(self, db, orchestrator):
        with pytest.raises(ValueError):
            await orchestrator.run("weekly", 7)
        with pytest.raises(ValueError):
            await orchestrator.run("full", 0)

        assert db.query(SyncLog).count() == 0


class TestProcessVehicle:
    """Per-vehicle processing."""

    @pytest.mark.asyncio
    async def test_vehicle_missing_from_storage_is_skipped(self, orchestrator, provider):
        vehicle = ProviderVehicle(vehicleId="fp-ghost", vin="VINGHOST00000001")

        async with provider.client() as client:
            result = await orchestrator.process_vehicle(client, "tok-123", vehicle, SYNC_NOW, SYNC_NOW)

        assert result.skipped
        assert result.events_processed == 0
        assert not any("fp-ghost" in str(r.url) for r in provider.requests)
