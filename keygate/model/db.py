from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    Index,
    Integer,
    String,
    Text,
)

from ..helpers import to_iso


Base = declarative_base()

KEY_SINGLE_USE = "single-use"
KEY_MULTI_USE = "multi-use"
KEY_TYPES = (KEY_SINGLE_USE, KEY_MULTI_USE)

ORDER_PENDING = "pending"
ORDER_PROCESSING = "processing"
ORDER_IN_PROGRESS = "in_progress"
ORDER_COMPLETED = "completed"
ORDER_PARTIAL = "partial"
ORDER_FAILED = "failed"
ORDER_CANCELLED = "cancelled"
ORDER_STATUSES = (
    ORDER_PENDING, ORDER_PROCESSING, ORDER_IN_PROGRESS, ORDER_COMPLETED,
    ORDER_PARTIAL, ORDER_FAILED, ORDER_CANCELLED,
)


# ----------------------------
# ORM models
# ----------------------------
class Key(Base):
    __tablename__ = "keys"
    id = Column(Integer, primary_key=True, autoincrement=True)
    value = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=True)

    # single-use | multi-use
    type = Column(String(50), nullable=False, default=KEY_SINGLE_USE)
    max_quantity = Column(Integer, nullable=True)
    used_quantity = Column(Integer, nullable=False, default=0)
    service_id = Column(Integer, nullable=True)

    is_used = Column(Boolean, nullable=False, default=False)
    used_at = Column(Float, nullable=True)
    used_by = Column(String(255), nullable=True)
    created_at = Column(Float, nullable=False)
    created_by = Column(String(255), nullable=False)

    @property
    def remaining_quantity(self):
        if self.max_quantity is None:
            return None
        return max(0, self.max_quantity - (self.used_quantity or 0))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "value": self.value,
            "name": self.name,
            "type": self.type,
            "maxQuantity": self.max_quantity,
            "usedQuantity": self.used_quantity,
            "remainingQuantity": self.remaining_quantity,
            "serviceId": self.service_id,
            "isUsed": bool(self.is_used),
            "usedAt": to_iso(self.used_at),
            "usedBy": self.used_by,
            "createdAt": to_iso(self.created_at),
            "createdBy": self.created_by,
        }


class Service(Base):
    __tablename__ = "services"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    platform = Column(String(100), nullable=False)
    type = Column(String(100), nullable=False)
    icon = Column(String(100), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    api_endpoint = Column(String(500), nullable=True)
    api_method = Column(String(10), nullable=False, default="POST")
    api_headers = Column(JSON, nullable=True)
    request_template = Column(JSON, nullable=True)
    created_at = Column(Float, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "platform": self.platform,
            "type": self.type,
            "icon": self.icon,
            "isActive": bool(self.is_active),
            "apiEndpoint": self.api_endpoint,
            "apiMethod": self.api_method,
            "apiHeaders": self.api_headers or {},
            "requestTemplate": self.request_template or {},
            "createdAt": to_iso(self.created_at),
        }

    def to_public_dict(self) -> dict:
        # no endpoint, headers or template: they carry provider credentials
        return {
            "id": self.id,
            "name": self.name,
            "platform": self.platform,
            "type": self.type,
            "icon": self.icon,
        }


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, autoincrement=True)
    public_id = Column(String(32), nullable=False, unique=True)
    key_id = Column(Integer, nullable=False)
    service_id = Column(Integer, nullable=False)
    target_url = Column(String(500), nullable=False)
    quantity = Column(Integer, nullable=False)

    # pending | processing | in_progress | completed | partial | failed
    # | cancelled
    status = Column(String(50), nullable=False, default=ORDER_PENDING)
    response = Column(JSON, nullable=True)
    provider_order_id = Column(String(100), nullable=True)
    created_at = Column(Float, nullable=False)
    completed_at = Column(Float, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "orderId": self.public_id,
            "keyId": self.key_id,
            "serviceId": self.service_id,
            "targetUrl": self.target_url,
            "quantity": self.quantity,
            "status": self.status,
            "response": self.response,
            "providerOrderId": self.provider_order_id,
            "createdAt": to_iso(self.created_at),
            "completedAt": to_iso(self.completed_at),
        }


class Log(Base):
    __tablename__ = "logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(50), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
    user_id = Column(String(255), nullable=True)
    key_id = Column(Integer, nullable=True)
    order_id = Column(Integer, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("idx_logs_type_created_at", "type", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "message": self.message,
            "data": self.data,
            "userId": self.user_id,
            "keyId": self.key_id,
            "orderId": self.order_id,
            "createdAt": to_iso(self.created_at),
        }


class AdminUser(Base):
    __tablename__ = "admin_users"
    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(100), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_login_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "isActive": bool(self.is_active),
            "lastLoginAt": to_iso(self.last_login_at),
            "createdAt": to_iso(self.created_at),
        }
