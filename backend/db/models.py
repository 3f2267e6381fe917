"""
Coral Manager Database Models

Tables:
  1. users               - Staff and client logins
  2. clients             - Client accounts (discount rate, contact details)
  3. categories          - Coral categories (case-insensitive unique name)
  4. corals              - Stock items
  5. orders              - Client orders (+ archive snapshots)
  6. order_items         - Order line items
  7. bulletins           - Announcements broadcast to clients
  8. notification_queue  - Durable outbound notification jobs
  9. xero_tokens         - Accounting OAuth token sets (encrypted)
  10. backups            - Backup run records
"""

import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    func,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


def _in_clause(column: str, enum_cls: type[PyEnum]) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# ─── Enumerations ───────────────────────────────────────────────────────────


class UserRole(str, PyEnum):
    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    CLIENT = "client"


class UserStatus(str, PyEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class StockStatus(str, PyEnum):
    AVAILABLE = "available"
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"


class OrderStatus(str, PyEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    READY_FOR_PICKUP = "ready_for_pickup"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BulletinStatus(str, PyEnum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class NotificationKind(str, PyEnum):
    ORDER_CONFIRMATION = "order_confirmation"
    STATUS_UPDATE = "status_update"
    BULLETIN = "bulletin"
    LOW_STOCK = "low_stock"
    CLIENT_REGISTRATION = "client_registration"


class JobStatus(str, PyEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# ─── 1. Users ───────────────────────────────────────────────────────────────


class User(Base):
    __tablename__ = "users"

    user_id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    phone = Column(String(50))
    password_hash = Column(String(255))
    role = Column(String(20), nullable=False, default=UserRole.CLIENT.value)
    status = Column(String(20), nullable=False, default=UserStatus.ACTIVE.value)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(_in_clause("role", UserRole), name="ck_user_role"),
        CheckConstraint(_in_clause("status", UserStatus), name="ck_user_status"),
    )


Index("uq_users_email_lower", func.lower(User.email), unique=True)


# ─── 2. Clients ─────────────────────────────────────────────────────────────


class Client(Base):
    __tablename__ = "clients"

    client_id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.user_id", ondelete="SET NULL"), nullable=True, unique=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)
    phone = Column(String(50))
    address = Column(Text)
    discount_rate = Column(Numeric(5, 2), nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("discount_rate >= 0 AND discount_rate <= 100", name="ck_client_discount_rate"),
    )

    user = relationship("User", lazy="selectin")
    orders = relationship("Order", back_populates="client", passive_deletes=True)


Index("uq_clients_email_lower", func.lower(Client.email), unique=True)


# ─── 3. Categories ──────────────────────────────────────────────────────────


class Category(Base):
    __tablename__ = "categories"

    category_id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    corals = relationship("Coral", back_populates="category", passive_deletes=True)


Index("uq_categories_name_lower", func.lower(Category.name), unique=True)


# ─── 4. Corals ──────────────────────────────────────────────────────────────


class Coral(Base):
    __tablename__ = "corals"

    coral_id = Column(Integer, primary_key=True, autoincrement=True)
    category_id = Column(Integer, ForeignKey("categories.category_id", ondelete="RESTRICT"), nullable=False)
    species_name = Column(String(255), nullable=False)
    scientific_name = Column(String(255), nullable=False)
    description = Column(Text)
    care_level = Column(String(20))  # easy, moderate, expert
    growth_rate = Column(String(20))  # slow, moderate, fast
    lighting_requirements = Column(String(255))
    water_flow = Column(String(20))  # low, medium, high
    temperature = Column(JSON)  # {"min": .., "max": ..}
    ph = Column(JSON)
    salinity = Column(JSON)
    image_url = Column(String(500))
    quantity = Column(Integer, nullable=False, default=0)
    price = Column(Numeric(10, 2), nullable=False)
    minimum_stock = Column(Integer, nullable=False, default=5)
    status = Column(String(20), nullable=False, default=StockStatus.OUT_OF_STOCK.value)
    created_by = Column(Integer, ForeignKey("users.user_id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_corals_category", "category_id"),
        CheckConstraint("quantity >= 0", name="ck_coral_quantity_non_negative"),
        CheckConstraint("price >= 0", name="ck_coral_price_non_negative"),
        CheckConstraint("minimum_stock >= 0", name="ck_coral_minimum_stock_non_negative"),
        CheckConstraint(_in_clause("status", StockStatus), name="ck_coral_status"),
    )

    category = relationship("Category", back_populates="corals", lazy="selectin")


# ─── 5. Orders ──────────────────────────────────────────────────────────────


class Order(Base):
    __tablename__ = "orders"

    order_id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(Integer, ForeignKey("clients.client_id", ondelete="SET NULL"), nullable=True)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    total_amount = Column(Numeric(10, 2), nullable=False)
    notes = Column(Text)
    preferred_pickup_date = Column(DateTime)
    paid = Column(Boolean, nullable=False, default=False)
    archived = Column(Boolean, nullable=False, default=False)
    stock_restored = Column(Boolean, nullable=False, default=False)
    archived_client_data = Column(JSON)  # frozen client snapshot once archived
    archived_items_data = Column(JSON)  # frozen line items once archived
    invoice_id = Column(String(100))
    invoice_status = Column(String(30))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_orders_client", "client_id"),
        Index("ix_orders_status", "status"),
        CheckConstraint("total_amount >= 0", name="ck_order_total_non_negative"),
        CheckConstraint(_in_clause("status", OrderStatus), name="ck_order_status"),
    )

    client = relationship("Client", back_populates="orders", lazy="selectin")
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.order_item_id",
    )


# ─── 6. Order Items ─────────────────────────────────────────────────────────


class OrderItem(Base):
    __tablename__ = "order_items"

    order_item_id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.order_id", ondelete="CASCADE"), nullable=False)
    coral_id = Column(Integer, ForeignKey("corals.coral_id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price_at_order = Column(Numeric(10, 2), nullable=False)
    subtotal = Column(Numeric(10, 2), nullable=False)

    __table_args__ = (
        Index("ix_order_items_order", "order_id"),
        CheckConstraint("quantity >= 1", name="ck_order_item_quantity_positive"),
        CheckConstraint("price_at_order >= 0", name="ck_order_item_price_non_negative"),
    )

    order = relationship("Order", back_populates="items")
    coral = relationship("Coral", lazy="selectin")


# ─── 7. Bulletins ───────────────────────────────────────────────────────────


class Bulletin(Base):
    __tablename__ = "bulletins"

    bulletin_id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    bulletin_type = Column(String(20), nullable=False)  # news, announcement, promotion, maintenance, new_stock
    priority = Column(String(10), nullable=False, default="low")
    status = Column(String(20), nullable=False, default=BulletinStatus.DRAFT.value)
    publish_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    expiry_date = Column(DateTime)
    send_notification = Column(Boolean, nullable=False, default=True)
    notified_at = Column(DateTime)
    attachments = Column(JSON, default=list)
    created_by = Column(Integer, ForeignKey("users.user_id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "bulletin_type IN ('news', 'announcement', 'promotion', 'maintenance', 'new_stock')",
            name="ck_bulletin_type",
        ),
        CheckConstraint("priority IN ('low', 'medium', 'high')", name="ck_bulletin_priority"),
        CheckConstraint(_in_clause("status", BulletinStatus), name="ck_bulletin_status"),
    )


# ─── 8. Notification Queue ──────────────────────────────────────────────────


class NotificationJob(Base):
    __tablename__ = "notification_queue"

    job_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    kind = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    payload = Column(JSON, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_attempt_at = Column(DateTime)
    next_attempt_at = Column(DateTime)
    error = Column(Text)
    batch_window_seconds = Column(Integer, nullable=False, default=300)
    processed_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_notification_queue_due", "status", "next_attempt_at"),
        Index("ix_notification_queue_kind_created", "kind", "created_at"),
        CheckConstraint(_in_clause("kind", NotificationKind), name="ck_notification_kind"),
        CheckConstraint(_in_clause("status", JobStatus), name="ck_notification_status"),
        CheckConstraint("attempts >= 0", name="ck_notification_attempts_non_negative"),
    )


# ─── 9. Xero Tokens ─────────────────────────────────────────────────────────


class XeroToken(Base):
    __tablename__ = "xero_tokens"

    token_id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(100))
    access_token_encrypted = Column(Text, nullable=False)
    refresh_token_encrypted = Column(Text, nullable=False)
    id_token = Column(Text)
    expires_at = Column(DateTime, nullable=False)
    scope = Column(Text)
    token_type = Column(String(20), default="Bearer")
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (Index("ix_xero_tokens_active", "active", "updated_at"),)


# ─── 10. Backups ────────────────────────────────────────────────────────────


class Backup(Base):
    __tablename__ = "backups"

    backup_id = Column(Integer, primary_key=True, autoincrement=True)
    filename = Column(String(255), nullable=False)
    backup_type = Column(String(20), nullable=False)
    size_bytes = Column(BigInteger)
    status = Column(String(20), nullable=False, default="in_progress")
    error = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint("backup_type IN ('full', 'database', 'images')", name="ck_backup_type"),
        CheckConstraint("status IN ('in_progress', 'completed', 'failed')", name="ck_backup_status"),
    )
