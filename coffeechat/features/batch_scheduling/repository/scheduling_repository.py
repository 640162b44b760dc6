"""
Postgres repository for organizers, contacts, suggestion sets and reservations.

Static methods only; services take the repository class as a dependency so
tests can hand in an in-memory double with the same surface.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from datetime import datetime

import psycopg

from coffeechat.db.helpers import (
    execute_query,
    execute_transaction,
    fetch_all,
    fetch_one,
    fetch_val,
    with_db_retry,
)
from coffeechat.db.pool import db_pool
from coffeechat.features.batch_scheduling.domain.errors import ConflictError
from coffeechat.features.batch_scheduling.domain.models import (
    ContactProfile,
    OrganizerProfile,
    Reservation,
    ReservationStatus,
    SuggestedSlot,
    SuggestionSet,
    SuggestionStatus,
    SyncFrequency,
    TimeInterval,
    TimeOfDay,
    WorkingHours,
)
from coffeechat.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

_RESERVATION_COLUMNS = """
    id, organizer_id, contact_id, batch_id, suggestion_set_id, start_time, end_time,
    timezone, status, synced_to_external_calendar, external_event_ref, expires_at, created_at
"""


# =========================================================================
# Row mappers
# =========================================================================


def _organizer_from_row(row: dict) -> OrganizerProfile:
    return OrganizerProfile(
        id=row["id"],
        email=row["email"],
        timezone=row["timezone"],
        working_hours=WorkingHours(row["working_hours_start"], row["working_hours_end"]),
        buffer_minutes=row["buffer_minutes"],
        weekend_availability=row["weekend_availability"],
        data_retention_days=row["data_retention_days"],
        calendar_account_ref=row["calendar_account_ref"],
        sync_frequency=SyncFrequency(row["sync_frequency"]),
        last_calendar_sync=row["last_calendar_sync"],
    )


def _contact_from_row(row: dict) -> ContactProfile:
    working_hours = None
    if row["working_hours_start"] and row["working_hours_end"]:
        working_hours = WorkingHours(row["working_hours_start"], row["working_hours_end"])
    return ContactProfile(
        id=row["id"],
        organizer_id=row["organizer_id"],
        name=row["name"],
        email=row["email"],
        timezone=row["timezone"],
        preferred_time_of_day=TimeOfDay(row["preferred_time_of_day"]),
        preferred_weekdays=tuple(row["preferred_weekdays"] or ()),
        working_hours=working_hours,
        meeting_duration_minutes=row["meeting_duration_minutes"],
        calendar_account_ref=row["calendar_account_ref"],
    )


def _reservation_from_row(row: dict) -> Reservation:
    return Reservation(
        id=row["id"],
        organizer_id=row["organizer_id"],
        contact_id=row["contact_id"],
        batch_id=row["batch_id"],
        suggestion_set_id=row["suggestion_set_id"],
        start=row["start_time"],
        end=row["end_time"],
        timezone=row["timezone"],
        status=ReservationStatus(row["status"]),
        synced_to_external_calendar=row["synced_to_external_calendar"],
        external_event_ref=row["external_event_ref"],
        expires_at=row["expires_at"],
        created_at=row["created_at"],
    )


def _slot_from_row(row: dict) -> SuggestedSlot:
    return SuggestedSlot(
        start=row["start_time"],
        end=row["end_time"],
        score=float(row["score"]),
        expires_at=row["expires_at"],
        selected=row["selected"],
        score_factors=row["score_factors"] or {},
    )


async def _load_sets(set_rows: list[dict]) -> list[SuggestionSet]:
    if not set_rows:
        return []
    slot_rows = await fetch_all(
        """
        SELECT suggestion_set_id, start_time, end_time, score, score_factors, selected, expires_at
        FROM suggestion_slots
        WHERE suggestion_set_id = ANY(%s)
        ORDER BY score DESC, start_time
        """,
        ([row["id"] for row in set_rows],),
    )
    slots_by_set: dict[str, list[SuggestedSlot]] = {}
    for row in slot_rows:
        slots_by_set.setdefault(row["suggestion_set_id"], []).append(_slot_from_row(row))

    return [
        SuggestionSet(
            id=row["id"],
            organizer_id=row["organizer_id"],
            contact_id=row["contact_id"],
            batch_id=row["batch_id"],
            slots=slots_by_set.get(row["id"], []),
            status=SuggestionStatus(row["status"]),
            created_at=row["created_at"],
        )
        for row in set_rows
    ]


class SchedulingRepository:
    """Persistence for the batch scheduling feature."""

    # ---------------------------------------------------------------------
    # Organizers and contacts (read-only here)
    # ---------------------------------------------------------------------

    @staticmethod
    @with_db_retry()
    async def get_organizer(organizer_id: str) -> OrganizerProfile | None:
        row = await fetch_one("SELECT * FROM organizers WHERE id = %s", (organizer_id,))
        return _organizer_from_row(row) if row else None

    @staticmethod
    @with_db_retry()
    async def list_organizers() -> list[OrganizerProfile]:
        rows = await fetch_all("SELECT * FROM organizers ORDER BY id")
        return [_organizer_from_row(row) for row in rows]

    @staticmethod
    @with_db_retry()
    async def get_contacts(organizer_id: str, contact_ids: Sequence[str]) -> list[ContactProfile]:
        rows = await fetch_all(
            "SELECT * FROM contacts WHERE organizer_id = %s AND id = ANY(%s)",
            (organizer_id, list(contact_ids)),
        )
        return [_contact_from_row(row) for row in rows]

    @staticmethod
    @with_db_retry()
    async def get_contact(organizer_id: str, contact_id: str) -> ContactProfile | None:
        row = await fetch_one(
            "SELECT * FROM contacts WHERE organizer_id = %s AND id = %s",
            (organizer_id, contact_id),
        )
        return _contact_from_row(row) if row else None

    # ---------------------------------------------------------------------
    # Time already taken
    # ---------------------------------------------------------------------

    @staticmethod
    @with_db_retry()
    async def list_committed_intervals(
        organizer_id: str, start: datetime, end: datetime
    ) -> list[TimeInterval]:
        """Pending and confirmed reservations overlapping [start, end)."""
        rows = await fetch_all(
            """
            SELECT start_time, end_time
            FROM reservations
            WHERE organizer_id = %s
              AND status IN ('pending', 'confirmed')
              AND start_time < %s
              AND end_time > %s
            ORDER BY start_time
            """,
            (organizer_id, end, start),
        )
        return [TimeInterval(row["start_time"], row["end_time"]) for row in rows]

    @staticmethod
    @with_db_retry()
    async def list_active_suggestion_intervals(
        organizer_id: str, start: datetime, end: datetime, now: datetime
    ) -> list[TimeInterval]:
        """Unexpired slots of active suggestion sets, so two batches never offer the same time."""
        rows = await fetch_all(
            """
            SELECT sl.start_time, sl.end_time
            FROM suggestion_slots sl
            JOIN suggestion_sets s ON s.id = sl.suggestion_set_id
            WHERE s.organizer_id = %s
              AND s.status = 'active'
              AND sl.expires_at > %s
              AND sl.start_time < %s
              AND sl.end_time > %s
            ORDER BY sl.start_time
            """,
            (organizer_id, now, end, start),
        )
        return [TimeInterval(row["start_time"], row["end_time"]) for row in rows]

    # ---------------------------------------------------------------------
    # Suggestion sets
    # ---------------------------------------------------------------------

    @staticmethod
    async def save_suggestion_sets(suggestion_sets: Iterable[SuggestionSet]) -> None:
        """Insert every set and its slots in a single transaction."""
        sets = list(suggestion_sets)
        if not sets:
            return

        queries = []
        for suggestion_set in sets:
            queries.append(
                (
                    """
                    INSERT INTO suggestion_sets
                        (id, organizer_id, contact_id, batch_id, status, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        suggestion_set.id,
                        suggestion_set.organizer_id,
                        suggestion_set.contact_id,
                        suggestion_set.batch_id,
                        suggestion_set.status.value,
                        suggestion_set.created_at,
                        suggestion_set.created_at,
                    ),
                )
            )
            for slot in suggestion_set.slots:
                queries.append(
                    (
                        """
                        INSERT INTO suggestion_slots
                            (suggestion_set_id, start_time, end_time, score,
                             score_factors, selected, expires_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            suggestion_set.id,
                            slot.start,
                            slot.end,
                            slot.score,
                            json.dumps(slot.score_factors),
                            slot.selected,
                            slot.expires_at,
                        ),
                    )
                )

        await execute_transaction(queries)
        logger.debug("Suggestion sets saved", set_count=len(sets), query_count=len(queries))

    @staticmethod
    @with_db_retry()
    async def get_suggestion_set(
        organizer_id: str, batch_id: str, contact_id: str
    ) -> SuggestionSet | None:
        rows = await fetch_all(
            """
            SELECT * FROM suggestion_sets
            WHERE organizer_id = %s AND batch_id = %s AND contact_id = %s
            """,
            (organizer_id, batch_id, contact_id),
        )
        sets = await _load_sets(rows)
        return sets[0] if sets else None

    @staticmethod
    @with_db_retry()
    async def list_suggestion_sets(organizer_id: str, batch_id: str) -> list[SuggestionSet]:
        rows = await fetch_all(
            """
            SELECT * FROM suggestion_sets
            WHERE organizer_id = %s AND batch_id = %s
            ORDER BY contact_id
            """,
            (organizer_id, batch_id),
        )
        return await _load_sets(rows)

    @staticmethod
    async def set_suggestion_set_status(
        organizer_id: str, suggestion_set_id: str, status: SuggestionStatus
    ) -> bool:
        affected = await execute_query(
            """
            UPDATE suggestion_sets
            SET status = %s, updated_at = NOW()
            WHERE organizer_id = %s AND id = %s
            """,
            (status.value, organizer_id, suggestion_set_id),
        )
        return affected > 0

    @staticmethod
    async def clear_batch(organizer_id: str, batch_id: str) -> int:
        """Move active sets of the batch to cleared. Other statuses are left alone."""
        return await execute_query(
            """
            UPDATE suggestion_sets
            SET status = 'cleared', updated_at = NOW()
            WHERE organizer_id = %s AND batch_id = %s AND status = 'active'
            """,
            (organizer_id, batch_id),
        )

    # ---------------------------------------------------------------------
    # Atomic commit
    # ---------------------------------------------------------------------

    @staticmethod
    async def commit_reservation(reservation: Reservation, suggestion_set_id: str) -> Reservation:
        """
        Turn a suggested slot into a pending reservation.

        Runs in one transaction: per-organizer advisory lock, re-check of the
        suggestion set status, overlap check against live reservations,
        insert, then mark the slot selected and the set meeting_scheduled.
        The reservations_no_overlap exclusion constraint backs the check.

        Raises:
            ConflictError: the slot overlaps a live reservation or the set is no longer active
        """
        try:
            async with db_pool.organizer_transaction(reservation.organizer_id) as conn:
                status = await fetch_val(
                    "SELECT status FROM suggestion_sets WHERE id = %s FOR UPDATE",
                    (suggestion_set_id,),
                    connection=conn,
                )
                if status != SuggestionStatus.ACTIVE.value:
                    raise ConflictError(
                        "Suggestion set is no longer active", reason=f"set_{status or 'missing'}"
                    )

                taken = await fetch_val(
                    """
                    SELECT EXISTS (
                        SELECT 1 FROM reservations
                        WHERE organizer_id = %s
                          AND status IN ('pending', 'confirmed')
                          AND tstzrange(start_time, end_time, '[)') && tstzrange(%s, %s, '[)')
                    )
                    """,
                    (reservation.organizer_id, reservation.start, reservation.end),
                    connection=conn,
                )
                if taken:
                    raise ConflictError("Slot overlaps an existing reservation", reason="overlap")

                await conn.execute(
                    """
                    INSERT INTO reservations
                        (id, organizer_id, contact_id, batch_id, suggestion_set_id,
                         start_time, end_time, timezone, status, expires_at, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        reservation.id,
                        reservation.organizer_id,
                        reservation.contact_id,
                        reservation.batch_id,
                        suggestion_set_id,
                        reservation.start,
                        reservation.end,
                        reservation.timezone,
                        reservation.status.value,
                        reservation.expires_at,
                        reservation.created_at,
                        reservation.created_at,
                    ),
                )
                await conn.execute(
                    """
                    UPDATE suggestion_slots SET selected = TRUE
                    WHERE suggestion_set_id = %s AND start_time = %s AND end_time = %s
                    """,
                    (suggestion_set_id, reservation.start, reservation.end),
                )
                await conn.execute(
                    """
                    UPDATE suggestion_sets
                    SET status = 'meeting_scheduled', updated_at = NOW()
                    WHERE id = %s
                    """,
                    (suggestion_set_id,),
                )
        except psycopg.errors.ExclusionViolation as e:
            raise ConflictError(
                "Slot overlaps an existing reservation", reason="overlap_constraint"
            ) from e

        return reservation

    # ---------------------------------------------------------------------
    # Reservations
    # ---------------------------------------------------------------------

    @staticmethod
    @with_db_retry()
    async def get_reservation(organizer_id: str, reservation_id: str) -> Reservation | None:
        row = await fetch_one(
            f"SELECT {_RESERVATION_COLUMNS} FROM reservations WHERE organizer_id = %s AND id = %s",
            (organizer_id, reservation_id),
        )
        return _reservation_from_row(row) if row else None

    @staticmethod
    @with_db_retry()
    async def list_reservations(organizer_id: str, batch_id: str) -> list[Reservation]:
        rows = await fetch_all(
            f"""
            SELECT {_RESERVATION_COLUMNS} FROM reservations
            WHERE organizer_id = %s AND batch_id = %s
            ORDER BY start_time
            """,
            (organizer_id, batch_id),
        )
        return [_reservation_from_row(row) for row in rows]

    @staticmethod
    async def transition_reservation(
        organizer_id: str,
        reservation_id: str,
        from_statuses: Sequence[ReservationStatus],
        to_status: ReservationStatus,
    ) -> Reservation | None:
        """Compare-and-set status change. Returns None when the current status did not match."""
        row = await fetch_one(
            f"""
            UPDATE reservations
            SET status = %s, updated_at = NOW()
            WHERE organizer_id = %s AND id = %s AND status = ANY(%s)
            RETURNING {_RESERVATION_COLUMNS}
            """,
            (to_status.value, organizer_id, reservation_id, [s.value for s in from_statuses]),
        )
        return _reservation_from_row(row) if row else None

    # ---------------------------------------------------------------------
    # Expiry and retention
    # ---------------------------------------------------------------------

    @staticmethod
    async def expire_pending_reservations(organizer_id: str, now: datetime) -> int:
        return await execute_query(
            """
            UPDATE reservations SET status = 'expired', updated_at = NOW()
            WHERE organizer_id = %s AND status = 'pending' AND expires_at <= %s
            """,
            (organizer_id, now),
        )

    @staticmethod
    async def expire_finished_reservations(organizer_id: str, now: datetime) -> int:
        return await execute_query(
            """
            UPDATE reservations SET status = 'expired', updated_at = NOW()
            WHERE organizer_id = %s AND status = 'confirmed' AND end_time <= %s
            """,
            (organizer_id, now),
        )

    @staticmethod
    async def expire_stale_suggestion_sets(organizer_id: str, now: datetime) -> int:
        return await execute_query(
            """
            UPDATE suggestion_sets s SET status = 'expired', updated_at = NOW()
            WHERE s.organizer_id = %s
              AND s.status = 'active'
              AND NOT EXISTS (
                  SELECT 1 FROM suggestion_slots sl
                  WHERE sl.suggestion_set_id = s.id AND sl.expires_at > %s
              )
            """,
            (organizer_id, now),
        )

    @staticmethod
    async def delete_suggestion_sets_past_grace(organizer_id: str, cutoff: datetime) -> int:
        """Delete expired/cleared sets whose last slot expired before cutoff."""
        return await execute_query(
            """
            DELETE FROM suggestion_sets s
            WHERE s.organizer_id = %s
              AND s.status IN ('expired', 'cleared')
              AND NOT EXISTS (
                  SELECT 1 FROM suggestion_slots sl
                  WHERE sl.suggestion_set_id = s.id AND sl.expires_at >= %s
              )
            """,
            (organizer_id, cutoff),
        )

    @staticmethod
    async def delete_reservations_before(organizer_id: str, cutoff: datetime) -> int:
        return await execute_query(
            """
            DELETE FROM reservations
            WHERE organizer_id = %s
              AND status IN ('expired', 'cancelled')
              AND end_time < %s
            """,
            (organizer_id, cutoff),
        )

    # ---------------------------------------------------------------------
    # External calendar sync
    # ---------------------------------------------------------------------

    @staticmethod
    @with_db_retry()
    async def list_unsynced_confirmed(organizer_id: str, now: datetime) -> list[Reservation]:
        rows = await fetch_all(
            f"""
            SELECT {_RESERVATION_COLUMNS} FROM reservations
            WHERE organizer_id = %s
              AND status = 'confirmed'
              AND synced_to_external_calendar = FALSE
              AND start_time > %s
            ORDER BY start_time
            """,
            (organizer_id, now),
        )
        return [_reservation_from_row(row) for row in rows]

    @staticmethod
    async def mark_reservation_synced(reservation_id: str, external_event_ref: str) -> None:
        await execute_query(
            """
            UPDATE reservations
            SET synced_to_external_calendar = TRUE, external_event_ref = %s, updated_at = NOW()
            WHERE id = %s
            """,
            (external_event_ref, reservation_id),
        )

    @staticmethod
    async def update_last_calendar_sync(organizer_id: str, synced_at: datetime) -> None:
        await execute_query(
            "UPDATE organizers SET last_calendar_sync = %s WHERE id = %s",
            (synced_at, organizer_id),
        )
