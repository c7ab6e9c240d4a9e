"""Domain Value Objects"""
from pydantic import BaseModel, Field, validator
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import List

from domain.enums import Weekday


class TimeSlot(BaseModel):
    """Value Object for a half-open booking interval [start, end)"""
    start: datetime
    end: datetime

    @validator('end')
    def end_after_start(cls, v, values):
        if 'start' in values and v <= values['start']:
            raise ValueError('End time must be after start time')
        return v

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def duration_minutes(self) -> int:
        """Whole minutes covered by the slot"""
        return int(self.duration.total_seconds() // 60)

    def duration_hours(self) -> Decimal:
        return Decimal(int(self.duration.total_seconds())) / Decimal(3600)

    def overlaps(self, other: "TimeSlot") -> bool:
        """Half-open overlap: touching endpoints do not overlap"""
        return self.start < other.end and self.end > other.start

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    def days(self) -> List[date]:
        """Calendar days touched by the slot"""
        last = (self.end - timedelta(microseconds=1)).date()
        current = self.start.date()
        result = []
        while current <= last:
            result.append(current)
            current += timedelta(days=1)
        return result

    class Config:
        frozen = True


ALL_WEEKDAYS = [day for day in Weekday]


class OperatingHours(BaseModel):
    """Value Object for a resource's daily opening window and weekdays

    ``opens_at == closes_at`` means the resource is open around the clock;
    bookings may then span several days as long as each day is allowed.
    Otherwise a booking must fit inside one day's window.
    """
    opens_at: time = time(6, 0)
    closes_at: time = time(23, 0)
    weekdays: List[Weekday] = Field(default_factory=lambda: list(ALL_WEEKDAYS))

    @validator('weekdays')
    def at_least_one_weekday(cls, v):
        if not v:
            raise ValueError('At least one weekday must be allowed')
        return v

    @validator('closes_at')
    def closes_after_opens(cls, v, values):
        opens_at = values.get('opens_at')
        if opens_at is not None and v < opens_at:
            raise ValueError('Closing time must not be before opening time')
        return v

    @property
    def around_the_clock(self) -> bool:
        return self.opens_at == self.closes_at

    def is_open_on(self, day: date) -> bool:
        return Weekday(day.weekday()) in self.weekdays

    def is_open_at(self, moment: datetime) -> bool:
        if not self.is_open_on(moment.date()):
            return False
        if self.around_the_clock:
            return True
        return self.opens_at <= moment.time() < self.closes_at

    def covers(self, slot: TimeSlot) -> bool:
        """Check that the whole slot falls inside opening hours"""
        if self.around_the_clock:
            return all(self.is_open_on(day) for day in slot.days())

        if not self.is_open_on(slot.start.date()):
            return False
        opens = datetime.combine(slot.start.date(), self.opens_at)
        closes = datetime.combine(slot.start.date(), self.closes_at)
        return opens <= slot.start and slot.end <= closes

    class Config:
        frozen = True


class Money(BaseModel):
    """Value Object for monetary amounts"""
    amount: Decimal = Field(ge=0)
    currency: str = "PLN"

    class Config:
        frozen = True
