from sqlalchemy import (
    Column, Integer, String, Float, Date, DateTime, Boolean, Text, Time,
    ForeignKey, Table, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    full_name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Trade(Base):
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    symbol = Column(String, index=True, nullable=False)
    direction = Column(String, default="long")  # long | short
    market = Column(String, default="US")  # US | IN
    entry_date = Column(Date, index=True, nullable=False)
    entry_price = Column(Float, nullable=True)
    quantity = Column(Float, nullable=False)
    fees = Column(Float, default=0.0)

    # Derived from exits
    remaining_quantity = Column(Float, nullable=True)
    average_exit_price = Column(Float, nullable=True)
    exit_date = Column(Date, nullable=True)
    exit_price = Column(Float, nullable=True)
    status = Column(String, default="open")  # open | closed

    # Risk management
    stop_loss = Column(Float, nullable=True)
    take_profit = Column(Float, nullable=True)

    # Journal metadata
    strategy = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    screenshot = Column(String, nullable=True)
    market_conditions = Column(String, nullable=True)  # bullish | bearish | neutral
    emotional_state = Column(String, nullable=True)  # confident | uncertain | neutral
    trade_setup = Column(String, nullable=True)
    proficiency = Column(String, nullable=True)
    growth_areas = Column(String, nullable=True)
    exit_trigger = Column(String, nullable=True)

    # AI feedback
    ai_feedback_performance = Column(Text, nullable=True)
    ai_feedback_lessons = Column(Text, nullable=True)
    ai_feedback_mistakes = Column(Text, nullable=True)
    ai_feedback_generated_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    exits = relationship(
        "TradeExit",
        back_populates="trade",
        cascade="all, delete-orphan",
        order_by="TradeExit.exit_date",
    )


class TradeExit(Base):
    __tablename__ = "trade_exits"

    id = Column(Integer, primary_key=True, index=True)
    trade_id = Column(Integer, ForeignKey("trades.id", ondelete="CASCADE"), index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    exit_date = Column(Date, index=True, nullable=False)
    exit_price = Column(Float, nullable=False)
    quantity = Column(Float, nullable=False)
    fees = Column(Float, default=0.0)
    notes = Column(Text, nullable=True)
    exit_trigger = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    trade = relationship("Trade", back_populates="exits")


class Strategy(Base):
    __tablename__ = "strategies"
    __table_args__ = (UniqueConstraint("name", "user_id"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class UserSettings(Base):
    __tablename__ = "user_settings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    total_capital = Column(Float, default=0.0, nullable=False)
    risk_per_trade = Column(Float, default=1.0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ReminderSettings(Base):
    __tablename__ = "reminder_settings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    reminder_enabled = Column(Boolean, default=False, nullable=False)
    reminder_frequency = Column(String, nullable=True)  # immediate | bi-weekly | monthly
    reminder_day = Column(Integer, nullable=True)  # 1-31
    reminder_time = Column(Time, nullable=True)
    telegram_chat_id = Column(String, nullable=True)
    last_sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Investment(Base):
    __tablename__ = "investments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    symbol = Column(String, index=True, nullable=False)
    purchase_date = Column(Date, nullable=False)
    purchase_price = Column(Float, nullable=False)
    shares = Column(Float, nullable=False)
    commission = Column(Float, default=0.0)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class BenchmarkValue(Base):
    __tablename__ = "benchmark_values"
    __table_args__ = (UniqueConstraint("symbol", "date"),)

    id = Column(Integer, primary_key=True, index=True)
    symbol = Column(String, nullable=False, default="^GSPC")
    date = Column(Date, index=True, nullable=False)
    value = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class PriceCache(Base):
    __tablename__ = "price_cache"

    id = Column(Integer, primary_key=True, index=True)
    symbol = Column(String, unique=True, index=True, nullable=False)
    price = Column(Float, nullable=False)
    last_updated = Column(DateTime(timezone=True), nullable=False)


class PortfolioSnapshot(Base):
    __tablename__ = "portfolio_snapshots"
    __table_args__ = (UniqueConstraint("user_id", "date"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    date = Column(Date, index=True, nullable=False)
    total_value = Column(Float, default=0.0)
    total_cost = Column(Float, default=0.0)
    total_gain_loss = Column(Float, default=0.0)
    total_gain_loss_pct = Column(Float, default=0.0)
    benchmark_value = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# --- Notes ---

note_tags = Table(
    "note_tags",
    Base.metadata,
    Column("note_id", Integer, ForeignKey("notes.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class Folder(Base):
    __tablename__ = "folders"
    __table_args__ = (UniqueConstraint("name", "user_id"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    name = Column(String, nullable=False)
    icon = Column(String, nullable=True)
    color = Column(String, nullable=True)
    is_default = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    notes = relationship("Note", back_populates="folder", cascade="all, delete-orphan")


class Note(Base):
    __tablename__ = "notes"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    folder_id = Column(Integer, ForeignKey("folders.id", ondelete="CASCADE"), index=True, nullable=False)
    trade_id = Column(Integer, ForeignKey("trades.id", ondelete="SET NULL"), index=True, nullable=True)
    title = Column(String, nullable=False)
    content = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    folder = relationship("Folder", back_populates="notes")
    tags = relationship("Tag", secondary=note_tags, back_populates="notes")


class Tag(Base):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("name", "user_id"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    name = Column(String, nullable=False)
    color = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    notes = relationship("Note", secondary=note_tags, back_populates="tags")
