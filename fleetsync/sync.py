"""
Sync orchestration.

One run walks the state machine ``started -> completed | failed``:

1. record a sync_log row (started)
2. acquire a provider token            (fatal on failure)
3. fetch the vehicle roster            (fatal on failure)
4. upsert the roster
5. per vehicle, in a bounded worker pool: store safety events with their
   attributed driver, score the daily behavior rows of attributed drivers
6. recompute department rollups for the window
7. mark the run completed with the events-processed total

Anything that escapes steps 2-6 marks the run failed and is re-raised. Rows
already written stay; every write is an idempotent upsert, so a re-run over
the same window converges to the same state.

Database work runs on one storage thread per run; provider calls stay on the
event loop.
"""
import argparse
import asyncio
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from .attribution import resolve_driver
from .config import config, setup_logging
from .db import SessionLocal
from .errors import RollupError
from .persistence import (
    complete_sync_run, fail_sync_run, get_vehicle_id_by_vin, insert_safety_event,
    start_sync_run, upsert_daily_driver_score, upsert_vehicle
)
from .provider import FleetProviderClient
from .rollup import recompute_department_rollups
from .schemas import ProviderDriverBehavior, ProviderSafetyEvent, ProviderVehicle, SyncType
from .scoring import BehaviorCounters, compute_scores

logger = logging.getLogger(__name__)


@dataclass
class VehicleSyncResult:
    """What happened to one vehicle during a run."""
    vin: str
    skipped: bool = False
    events_processed: int = 0
    events_inserted: int = 0
    events_unattributed: int = 0
    scores_upserted: int = 0
    behavior_unattributed: int = 0
    invalid_records: int = 0
    fetch_errors: List[str] = field(default_factory=list)


@dataclass
class SyncResult:
    success: bool
    events_processed: int
    vehicles_processed: int
    sync_run_id: Optional[int] = None
    vehicles: List[VehicleSyncResult] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "success": self.success,
            "eventsProcessed": self.events_processed,
            "vehiclesProcessed": self.vehicles_processed,
            "syncRunId": self.sync_run_id,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class SyncOrchestrator:
    def __init__(self,
                 session_factory: Optional[Callable] = None,
                 client_factory: Optional[Callable[[], FleetProviderClient]] = None,
                 max_concurrency: Optional[int] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.session_factory = session_factory or SessionLocal
        self.client_factory = client_factory or FleetProviderClient
        self.max_concurrency = max(1, max_concurrency or config.max_concurrency)
        self.clock = clock
        self._executor: Optional[ThreadPoolExecutor] = None

    async def run(self, sync_type="incremental", days_to_sync: int = 7) -> SyncResult:
        sync_type = SyncType(sync_type)
        if days_to_sync < 1:
            raise ValueError("days_to_sync must be at least 1")

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="fleetsync-db")
        try:
            return await self._run(sync_type, days_to_sync)
        finally:
            self._executor.shutdown()
            self._executor = None

    async def _run(self, sync_type: SyncType, days_to_sync: int) -> SyncResult:
        end = self.clock()
        start = end - timedelta(days=days_to_sync)
        logger.info("Starting %s sync for last %d days", sync_type.value, days_to_sync)

        run_id = await self._storage(self._start_run, sync_type.value, days_to_sync, {
            "window_start": start.isoformat(),
            "window_end": end.isoformat(),
        })

        try:
            async with self.client_factory() as client:
                token = await client.get_access_token()
                vehicles = await client.fetch_vehicles(token)
                logger.info("Found %d vehicles", len(vehicles))

                await self._storage(self._upsert_roster, vehicles)
                results = await self._process_vehicles(client, token, vehicles, start, end)

            await self._storage(self._rollup, start.date(), end.date())
        except Exception as exc:
            logger.error("Sync run %s failed: %s", run_id, exc, exc_info=True)
            await self._storage(self._fail_run, run_id, _error_message(exc))
            raise

        events_processed = sum(result.events_processed for result in results)
        await self._storage(self._complete_run, run_id, events_processed, len(vehicles))

        logger.info("Sync %s completed. Processed %d events across %d vehicles.",
                    run_id, events_processed, len(vehicles))
        return SyncResult(
            success=True,
            events_processed=events_processed,
            vehicles_processed=len(vehicles),
            sync_run_id=run_id,
            vehicles=results,
        )

    async def _storage(self, func, *args):
        """Run blocking database work on the storage thread, off the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: func(*args))

    def _start_run(self, sync_type: str, days_to_sync: int, meta: dict) -> int:
        with self.session_factory() as db:
            return start_sync_run(db, sync_type, days_to_sync, meta=meta).id

    def _complete_run(self, run_id: int, events_processed: int, vehicles_processed: int):
        with self.session_factory() as db:
            complete_sync_run(db, run_id, events_processed, vehicles_processed)

    def _fail_run(self, run_id: int, message: str):
        with self.session_factory() as db:
            fail_sync_run(db, run_id, message)

    def _lookup_vehicle(self, vin: str) -> Optional[int]:
        with self.session_factory() as db:
            return get_vehicle_id_by_vin(db, vin)

    def _upsert_roster(self, vehicles: List[ProviderVehicle]):
        with self.session_factory() as db:
            for vehicle in vehicles:
                upsert_vehicle(db, vehicle)

    async def _process_vehicles(self, client, token, vehicles, start, end) -> List[VehicleSyncResult]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def worker(vehicle):
            async with semaphore:
                return await self.process_vehicle(client, token, vehicle, start, end)

        outcomes = await asyncio.gather(*(worker(v) for v in vehicles), return_exceptions=True)

        # Every vehicle has finished before an unexpected failure is surfaced
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return list(outcomes)

    async def process_vehicle(self, client: FleetProviderClient, token: str, vehicle: ProviderVehicle,
                              start: datetime, end: datetime) -> VehicleSyncResult:
        result = VehicleSyncResult(vin=vehicle.vin)
        logger.debug("Processing vehicle %s", vehicle.vin)

        vehicle_db_id = await self._storage(self._lookup_vehicle, vehicle.vin)
        if vehicle_db_id is None:
            logger.warning("Vehicle %s not found in database, skipping", vehicle.vin)
            result.skipped = True
            return result

        events = await client.fetch_safety_events(token, vehicle.external_vehicle_id, start, end)
        if not events.ok:
            result.fetch_errors.append(f"safety-events: {events.error}")
        result.invalid_records += events.invalid
        await self._storage(self._store_events, vehicle_db_id, events.records, result)

        behavior = await client.fetch_driver_behavior(token, vehicle.external_vehicle_id, start, end)
        if not behavior.ok:
            result.fetch_errors.append(f"driver-behavior: {behavior.error}")
        result.invalid_records += behavior.invalid
        await self._storage(self._store_behavior, vehicle_db_id, behavior.records, result)

        return result

    def _store_events(self, vehicle_db_id: int, events: List[ProviderSafetyEvent], result: VehicleSyncResult):
        with self.session_factory() as db:
            for event in events:
                employee_id = resolve_driver(db, vehicle_db_id, event.timestamp)
                if employee_id is None:
                    result.events_unattributed += 1
                if insert_safety_event(db, vehicle_db_id, employee_id, event):
                    result.events_inserted += 1
                result.events_processed += 1

    def _store_behavior(self, vehicle_db_id: int, rows: List[ProviderDriverBehavior], result: VehicleSyncResult):
        with self.session_factory() as db:
            for row in rows:
                employee_id = resolve_driver(db, vehicle_db_id, row.date)
                if employee_id is None:
                    result.behavior_unattributed += 1
                    continue

                counters = BehaviorCounters(
                    harsh_brake=row.harsh_brake_count,
                    rapid_accel=row.rapid_accel_count,
                    speeding=row.speeding_count,
                    seatbelt_off=row.seatbelt_off_count,
                )
                scores = compute_scores(counters, row.overall_score)
                upsert_daily_driver_score(
                    db, row.date, employee_id, vehicle_db_id, row.miles_driven, counters, scores
                )
                result.scores_upserted += 1

    def _rollup(self, start, end):
        try:
            with self.session_factory() as db:
                recompute_department_rollups(db, start, end)
        except Exception as exc:
            raise RollupError(f"Department rollup failed: {_error_message(exc)}") from exc


async def run_sync(sync_type="incremental", days_to_sync: int = 7, **kwargs) -> SyncResult:
    """Entry point: run one sync with the default session and provider client."""
    return await SyncOrchestrator(**kwargs).run(sync_type, days_to_sync)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Sync telematics data and recompute driver risk scores")
    parser.add_argument("--sync-type", choices=[t.value for t in SyncType], default=config.default_sync_type)
    parser.add_argument("--days", type=int, default=config.default_days)
    parser.add_argument("--concurrency", type=int, default=None)
    args = parser.parse_args(argv)

    setup_logging()
    result = asyncio.run(run_sync(args.sync_type, args.days, max_concurrency=args.concurrency))
    print(json.dumps(result.as_dict()))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
