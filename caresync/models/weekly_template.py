"""Weekly template model definitions."""

from sqlalchemy import Boolean, Column, Integer, String, Time, UniqueConstraint

from caresync.database import Base


class WeeklyTemplateDay(Base):
    """Enabled flag of one day of a provider's recurring week."""
    __tablename__ = "weekly_template_days"
    __table_args__ = (
        UniqueConstraint("provider_id", "day", name="uq_weekly_template_day"),
    )

    id = Column(Integer, primary_key=True)
    provider_id = Column(Integer, nullable=False, index=True)
    day = Column(String, nullable=False)  # monday..sunday
    enabled = Column(Boolean, nullable=False, default=False)


class WeeklyTemplateRange(Base):
    """A working-hours range of one template day, ordered by position."""
    __tablename__ = "weekly_template_ranges"

    id = Column(Integer, primary_key=True)
    provider_id = Column(Integer, nullable=False, index=True)
    day = Column(String, nullable=False)
    position = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
