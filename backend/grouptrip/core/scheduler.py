"""
Multi-day scheduling.

Expands a route's linear destination order into day-bounded schedules: visits
are packed greedily into each day until the daily budget is used up, meals are
slotted at their anchor times and one accommodation slot is placed for every
night between scheduled days. A stop that fits in no day is dropped and
reported in ``issues``.
"""
import logging
from collections import namedtuple
from dataclasses import dataclass, field
from datetime import datetime, timedelta, time as TimeOfDay
from typing import Dict, List, Optional, Sequence, Set, Tuple

from grouptrip.core.accommodation import suggest_accommodation, total_accommodation_cost
from grouptrip.core.geo import build_segment
from grouptrip.core.models import (
    DEPARTURE_ID, AccommodationQuality, Coordinates, DaySchedule, Destination, MealBreak,
    Pace, RouteSolution, ScheduleResult, Segment, TransportMode, TripData, TripWindow, Visit,
)
from grouptrip.core.settings import Settings

logger = logging.getLogger(__name__)

MealSpec = namedtuple("MealSpec", ["kind", "anchor", "duration_minutes", "window_start", "window_end"])

MEALS = (
    MealSpec("breakfast", TimeOfDay(8, 0), 30, TimeOfDay(7, 30), TimeOfDay(9, 0)),
    MealSpec("lunch", TimeOfDay(12, 0), 60, TimeOfDay(11, 30), TimeOfDay(13, 0)),
    MealSpec("dinner", TimeOfDay(18, 0), 90, TimeOfDay(17, 30), TimeOfDay(19, 30)),
)


def _minutes_of_day(t: TimeOfDay) -> int:
    return t.hour * 60 + t.minute


def meals_within_day(settings: Settings) -> List[MealSpec]:
    """Meals whose anchor falls inside the active window of a day"""
    start = settings.DAY_START_HOUR * 60
    end = start + settings.DAILY_BUDGET_MINUTES
    return [m for m in MEALS if start <= _minutes_of_day(m.anchor) < end]


def available_trip_minutes(window: TripWindow, settings: Settings) -> float:
    """Visiting and travel time the whole trip offers once meals are set aside"""
    meal_minutes = sum(m.duration_minutes for m in meals_within_day(settings))
    return float(window.days * max(0, settings.DAILY_BUDGET_MINUTES - meal_minutes))


def classify_pace(active_minutes: float, settings: Settings) -> Pace:
    utilization = active_minutes / settings.DAILY_BUDGET_MINUTES if settings.DAILY_BUDGET_MINUTES else 1.0
    if utilization < settings.RELAXED_PACE_UTILIZATION:
        return Pace.RELAXED
    if utilization < settings.MODERATE_PACE_UTILIZATION:
        return Pace.MODERATE
    return Pace.PACKED


@dataclass
class _DayPlan:
    index: int
    start: datetime
    cursor: datetime
    location: Coordinates
    last_id: str
    begins: datetime
    visits: List[Visit] = field(default_factory=list)
    meals: List[MealBreak] = field(default_factory=list)
    taken: Set[str] = field(default_factory=set)
    travel_minutes: float = 0.0
    walking_km: float = 0.0

    def at(self, t: TimeOfDay) -> datetime:
        return datetime.combine(self.start.date(), t, tzinfo=self.start.tzinfo)


@dataclass
class _Placement:
    visit: Visit
    segment: Segment
    meals: List[MealBreak]


class MultiDayScheduler:
    def __init__(
        self,
        data: TripData,
        settings: Settings,
        stays: Dict[str, float],
        quality: AccommodationQuality = AccommodationQuality.STANDARD,
    ):
        self.data = data
        self.settings = settings
        self.stays = stays
        self.quality = quality
        self.destinations = data.destination_index
        self.meals = meals_within_day(settings)
        self.budget = settings.DAILY_BUDGET_MINUTES
        self.buffer = timedelta(minutes=settings.VISIT_BUFFER_MINUTES)
        self._route_segments: Dict[Tuple[str, str], Segment] = {}

    # ---- helpers -----------------------------------------------------------

    def _day_start(self, index: int) -> datetime:
        first = self.data.window.start
        day = (first + timedelta(days=index)).date()
        return datetime.combine(day, TimeOfDay(self.settings.DAY_START_HOUR, 0), tzinfo=first.tzinfo)

    def _new_day(self, index: int, location: Coordinates, last_id: str) -> _DayPlan:
        start = self._day_start(index)
        begins = start
        skipped = set()
        if index == 0 and self.data.window.start > start:
            # trip begins mid-day; meals already over are skipped
            begins = self.data.window.start
            skipped = {
                m.kind for m in self.meals
                if datetime.combine(start.date(), m.window_end, tzinfo=start.tzinfo) <= begins
            }
        return _DayPlan(
            index=index, start=start, cursor=begins, location=location, last_id=last_id,
            begins=begins, taken=skipped,
        )

    def _segment(self, from_id: str, origin: Coordinates, dest: Destination) -> Segment:
        known = self._route_segments.get((from_id, dest.id))
        if known is not None:
            return known
        return build_segment(from_id, origin, dest.id, dest.coordinates, self.settings)

    def _used_minutes(self, day: _DayPlan, until: datetime) -> float:
        return (until - day.start).total_seconds() / 60

    def _due_meals(self, day: _DayPlan, now: datetime, taken: Set[str], stay_minutes: float = 0.0) -> Tuple[datetime, List[MealBreak]]:
        """Meals to take at ``now`` before an activity of ``stay_minutes``"""
        meals = []
        for meal in self.meals:
            if meal.kind in taken:
                continue
            window_start, window_end, anchor = day.at(meal.window_start), day.at(meal.window_end), day.at(meal.anchor)
            if now >= anchor or (now >= window_start and now + timedelta(minutes=stay_minutes) > window_end):
                end = now + timedelta(minutes=meal.duration_minutes)
                meals.append(MealBreak(meal.kind, now, end))
                taken.add(meal.kind)
                now = end
        return now, meals

    # ---- placement ---------------------------------------------------------

    def _plan_visit(self, day: _DayPlan, dest: Destination, stay: float) -> Optional[_Placement]:
        taken = set(day.taken)
        cursor, meals = self._due_meals(day, day.cursor, taken)

        segment = self._segment(day.last_id, day.location, dest)
        if day.visits and segment.duration_minutes > self.settings.MAX_TRAVEL_MINUTES_PER_DAY:
            # long transfers start a fresh day
            return None

        leave = cursor + self.buffer if day.visits else cursor
        arrival = leave + timedelta(minutes=segment.duration_minutes)
        arrival, arrival_meals = self._due_meals(day, arrival, taken, stay)
        departure = arrival + timedelta(minutes=stay)

        if self._used_minutes(day, departure) > self.budget:
            return None

        visit = Visit(
            destination_id=dest.id,
            name=dest.name,
            arrival=arrival,
            departure=departure,
            travel_minutes=segment.duration_minutes,
            mode=segment.mode,
            distance_km=segment.distance_km,
        )
        return _Placement(visit=visit, segment=segment, meals=meals + arrival_meals)

    def _commit(self, day: _DayPlan, placement: _Placement, dest: Destination) -> None:
        day.visits.append(placement.visit)
        day.meals.extend(placement.meals)
        day.taken.update(m.kind for m in placement.meals)
        day.cursor = placement.visit.departure
        day.location = dest.coordinates
        day.last_id = dest.id
        day.travel_minutes += placement.segment.duration_minutes
        if placement.segment.mode == TransportMode.WALKING:
            day.walking_km += placement.segment.distance_km

    def _close_day(self, day: _DayPlan) -> Optional[DaySchedule]:
        if not day.visits:
            return None

        for meal in self.meals:
            if meal.kind in day.taken or day.cursor < day.at(meal.anchor):
                continue
            end = day.cursor + timedelta(minutes=meal.duration_minutes)
            if self._used_minutes(day, end) <= self.budget:
                day.meals.append(MealBreak(meal.kind, day.cursor, end))
                day.taken.add(meal.kind)
                day.cursor = end

        finish = max([v.departure for v in day.visits] + [m.end for m in day.meals])
        active = (finish - day.begins).total_seconds() / 60
        pace = classify_pace(active, self.settings)

        warnings = []
        if len(day.visits) > self.settings.MAX_DESTINATIONS_PER_DAY:
            warnings.append("TOO_MANY_DESTINATIONS")
        if day.walking_km > self.settings.EXCESSIVE_WALKING_KM:
            warnings.append("EXCESSIVE_WALKING")
        if finish > day.at(TimeOfDay(self.settings.LATE_FINISH_HOUR, 0)):
            warnings.append("LATE_FINISH")
        if pace == Pace.PACKED:
            warnings.append("PACKED_SCHEDULE")

        return DaySchedule(
            day_index=day.index,
            date=day.start.date(),
            visits=day.visits,
            meals=sorted(day.meals, key=lambda m: m.start),
            pace=pace,
            active_minutes=round(active, 2),
            travel_minutes=round(day.travel_minutes, 2),
            walking_km=round(day.walking_km, 3),
            warnings=warnings,
        )

    # ---- entry point -------------------------------------------------------

    def schedule(self, route: RouteSolution) -> ScheduleResult:
        self._route_segments = {(s.from_id, s.to_id): s for s in route.segments}
        total_days = self.data.window.days

        days: List[DaySchedule] = []
        dropped: List[str] = []
        issues: List[str] = []

        day = self._new_day(0, self.data.departure, DEPARTURE_ID)
        if self._used_minutes(day, day.cursor) >= self.budget:
            day = self._new_day(1, self.data.departure, DEPARTURE_ID)

        for dest_id in route.destination_ids:
            dest = self.destinations.get(dest_id)
            if dest is None:
                issues.append(f"Destination {dest_id} is not part of this trip")
                dropped.append(dest_id)
                continue

            stay = self.stays.get(dest_id, float(dest.preferred_stay_minutes))
            while True:
                if day.index >= total_days:
                    dropped.append(dest_id)
                    issues.append(f"No day left in the trip window for {dest.name} ({dest_id})")
                    break

                placement = self._plan_visit(day, dest, stay)
                if placement is not None:
                    self._commit(day, placement, dest)
                    break

                if not day.visits:
                    shortened = self._plan_visit(day, dest, float(dest.min_stay_minutes))
                    if shortened is not None and dest.min_stay_minutes < stay:
                        self._commit(day, shortened, dest)
                        issues.append(
                            f"Shortened visit to {dest.name} ({dest_id}) to {dest.min_stay_minutes} minutes"
                        )
                    else:
                        dropped.append(dest_id)
                        issues.append(
                            f"{dest.name} ({dest_id}) does not fit within the "
                            f"{self.budget}-minute daily budget"
                        )
                    break

                closed = self._close_day(day)
                if closed is not None:
                    days.append(closed)
                day = self._new_day(day.index + 1, day.location, day.last_id)

        closed = self._close_day(day)
        if closed is not None:
            days.append(closed)

        slots = []
        for i, current in enumerate(days[:-1]):
            following = days[i + 1]
            slot = suggest_accommodation(
                current, following, self.destinations, self.quality, self.settings,
                check_out=self._day_start(following.day_index),
            )
            current.accommodation = slot
            slots.append(slot)

        if dropped:
            logger.warning(f"Dropped {len(dropped)} destination(s) while scheduling: {', '.join(dropped)}")

        return ScheduleResult(
            days=days,
            dropped_destination_ids=dropped,
            issues=issues,
            accommodation_cost=total_accommodation_cost(slots),
        )
