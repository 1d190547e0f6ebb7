# --- models for the bundle configuration store and shop sessions ---

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import (
    String, Text, Integer, Numeric, DateTime, ForeignKey, func, Index, text
)
from sqlalchemy.pool import StaticPool
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, Optional
import logging, os, uuid

from dotenv import load_dotenv
load_dotenv()

# -------------------------------------------------------------------
# Engine / Session
# -------------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "")

if DATABASE_URL:
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")
    # asyncpg takes ssl via connect_args, not the sslmode query parameter
    ssl_required = "sslmode=require" in DATABASE_URL or "sslmode=verify-full" in DATABASE_URL
    for param in ("?sslmode=verify-full", "&sslmode=verify-full", "?sslmode=require", "&sslmode=require"):
        DATABASE_URL = DATABASE_URL.replace(param, "")

    connect_args: Dict[str, Any] = {
        "server_settings": {"application_name": "bundle_checkout_engine"},
        "command_timeout": 30,
        "timeout": 15,
    }
    if ssl_required:
        connect_args["ssl"] = "require"

    engine = create_async_engine(
        DATABASE_URL,
        echo=os.getenv("NODE_ENV") == "development",
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=1800,
        pool_timeout=15,
        connect_args=connect_args,
    )
else:
    DATABASE_URL = "sqlite+aiosqlite:///:memory:"
    engine = create_async_engine(
        DATABASE_URL,
        echo=os.getenv("NODE_ENV") == "development",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

def _redact_db_url(url: str) -> str:
    try:
        if "@" in url and "://" in url:
            head, tail = url.split("://", 1)
            creds, hostpart = tail.split("@", 1)
            if ":" in creds:
                user, _pwd = creds.split(":", 1)
                return f"{head}://{user}:******@{hostpart}"
            return url
        if url.startswith("sqlite"):
            return url
    except ValueError:
        pass
    return "******"

logger = logging.getLogger(__name__)
logger.info(f"Creating SQL engine for { _redact_db_url(DATABASE_URL) }")

async def probe_db_connection():
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("DB connectivity probe: OK")
    except Exception as e:
        logger.exception(f"DB connectivity probe failed: {e}")

# -------------------------------------------------------------------
# Base
# -------------------------------------------------------------------
class Base(DeclarativeBase):
    pass

# -------------------------------------------------------------------
# MODELS
# -------------------------------------------------------------------

class Bundle(Base):
    __tablename__ = "bundles"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    # Public id used by the storefront widget; internal id also accepted
    bundle_id: Mapped[Optional[str]] = mapped_column(String, unique=True, nullable=True)
    shop: Mapped[Optional[str]] = mapped_column(String, index=True, nullable=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)

    # SUM | FIXED | DISCOUNT_PERCENT | DISCOUNT_AMOUNT
    pricing_type: Mapped[str] = mapped_column(String, nullable=False, default="SUM")
    # cents for FIXED / DISCOUNT_AMOUNT, percent for DISCOUNT_PERCENT
    price_value_cents: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    products = relationship(
        "BundleProduct", back_populates="bundle", order_by="BundleProduct.position", lazy="selectin"
    )
    tier_prices = relationship(
        "BundleTierPrice", back_populates="bundle", order_by="BundleTierPrice.position", lazy="selectin"
    )
    wrapping_options = relationship(
        "WrappingOption", back_populates="bundle", order_by="WrappingOption.position", lazy="selectin"
    )
    cards = relationship(
        "BundleCard", back_populates="bundle", order_by="BundleCard.position", lazy="selectin"
    )


class BundleProduct(Base):
    __tablename__ = "bundle_products"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    bundle_id: Mapped[str] = mapped_column(String, ForeignKey("bundles.id", ondelete="CASCADE"), nullable=False)

    product_gid: Mapped[Optional[str]] = mapped_column(String, nullable=True)   # gid://shopify/Product/123
    variant_gid: Mapped[Optional[str]] = mapped_column(String, nullable=True)   # default variant
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # JSON array of {"id", "title", "priceCents"}
    variants_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    min_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_quantity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    bundle = relationship("Bundle", back_populates="products")


class BundleTierPrice(Base):
    __tablename__ = "bundle_tier_prices"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    bundle_id: Mapped[str] = mapped_column(String, ForeignKey("bundles.id", ondelete="CASCADE"), nullable=False)

    min_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    pricing_type: Mapped[str] = mapped_column(String, nullable=False)
    value_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    value_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 2), nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    bundle = relationship("Bundle", back_populates="tier_prices")


class WrappingOption(Base):
    __tablename__ = "wrapping_options"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    bundle_id: Mapped[str] = mapped_column(String, ForeignKey("bundles.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    bundle = relationship("Bundle", back_populates="wrapping_options")


class BundleCard(Base):
    __tablename__ = "bundle_cards"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    bundle_id: Mapped[str] = mapped_column(String, ForeignKey("bundles.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    bundle = relationship("Bundle", back_populates="cards")


class ShopSession(Base):
    __tablename__ = "shop_sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    shop: Mapped[str] = mapped_column(String, index=True, nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    # Offline tokens carry no expiry
    expires: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)


class ShopSettings(Base):
    __tablename__ = "shop_settings"

    shop: Mapped[str] = mapped_column(String, primary_key=True)
    plan: Mapped[str] = mapped_column(String, nullable=False, default="FREE")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

# -------------------------------------------------------------------
# Indexes
# -------------------------------------------------------------------
Index('ix_bundle_products_bundle', BundleProduct.bundle_id)
Index('ix_bundle_tier_prices_bundle', BundleTierPrice.bundle_id)
Index('ix_shop_sessions_shop_expires', ShopSession.shop, ShopSession.expires)
# -------------------------------------------------------------------
# init helpers
# -------------------------------------------------------------------
async def init_db():
    """Ensure tables exist."""
    await probe_db_connection()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("DB init complete (tables ensured).")

async def check_db_health() -> Dict[str, Any]:
    started = datetime.now()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"DB health check failed: {e}")
        return {"status": "unhealthy", "error": type(e).__name__}
    latency_ms = (datetime.now() - started).total_seconds() * 1000
    return {"status": "healthy", "latency_ms": round(latency_ms, 1)}
