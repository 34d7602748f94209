import os, re, logging
from datetime import datetime, date
from decimal import Decimal, InvalidOperation
from sqlalchemy import (create_engine, inspect, Column, BigInteger, Integer, String, Text, Numeric,
                        Boolean, TIMESTAMP, ForeignKey)
from sqlalchemy.orm import declarative_base, sessionmaker
from werkzeug.security import generate_password_hash, check_password_hash

logger = logging.getLogger(__name__)

# ---------------------- DB SETUP --------------------------
DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL environment variable is not set")
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

engine = create_engine(DATABASE_URL, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
Base = declarative_base()

# sqlite only autoincrements INTEGER primary keys
PK = BigInteger().with_variant(Integer, "sqlite")
MONEY = Numeric(12, 2)

# ---------------------- MODELS ----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(PK, primary_key=True)
    username = Column(String(50), unique=True, nullable=False)
    email = Column(String(100), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    first_name = Column(String(50))
    last_name = Column(String(50))
    is_verified = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow)
    last_login = Column(TIMESTAMP)

    def set_password(self, raw):
        self.password_hash = generate_password_hash(raw)

    def check_password(self, raw):
        return check_password_hash(self.password_hash, raw)

class VipLevel(Base):
    __tablename__ = "vip_levels"
    id = Column(PK, primary_key=True)
    level_name = Column(String(50), unique=True, nullable=False)
    min_points_required = Column(Integer, nullable=False, default=0)
    cashback_percentage = Column(Numeric(5, 2), default=0)
    bonus_multiplier = Column(Numeric(5, 2), default=1)

class UserVipStats(Base):
    __tablename__ = "user_vip_stats"
    id = Column(PK, primary_key=True)
    user_id = Column(PK, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    vip_level_id = Column(PK, ForeignKey("vip_levels.id"), nullable=False, default=1)
    total_points = Column(Integer, nullable=False, default=0)
    current_month_points = Column(Integer, nullable=False, default=0)
    lifetime_wagered = Column(MONEY, nullable=False, default=0)
    lifetime_won = Column(MONEY, nullable=False, default=0)
    lifetime_lost = Column(MONEY, nullable=False, default=0)
    created_at = Column(TIMESTAMP, default=datetime.utcnow)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow)

class Wallet(Base):
    __tablename__ = "user_wallets"
    id = Column(PK, primary_key=True)
    user_id = Column(PK, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    balance = Column(MONEY, nullable=False, default=0)
    bonus_balance = Column(MONEY, nullable=False, default=0)
    locked_balance = Column(MONEY, nullable=False, default=0)
    total_deposited = Column(MONEY, nullable=False, default=0)
    total_withdrawn = Column(MONEY, nullable=False, default=0)
    created_at = Column(TIMESTAMP, default=datetime.utcnow)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow)

class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(PK, primary_key=True)
    user_id = Column(PK, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    transaction_type = Column(String(20), nullable=False)  # deposit | withdrawal | bonus | bet | win | adjust
    amount = Column(MONEY, nullable=False)
    balance_before = Column(MONEY)
    balance_after = Column(MONEY)
    status = Column(String(20), nullable=False, default="completed")  # pending | completed | failed
    description = Column(String(255))
    created_at = Column(TIMESTAMP, default=datetime.utcnow)

class GameSession(Base):
    __tablename__ = "game_sessions"
    id = Column(PK, primary_key=True)
    user_id = Column(PK, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    game_type = Column(String(50), nullable=False)
    total_wagered = Column(MONEY, nullable=False, default=0)
    total_won = Column(MONEY, nullable=False, default=0)
    total_lost = Column(MONEY, nullable=False, default=0)
    games_played = Column(Integer, nullable=False, default=0)
    created_at = Column(TIMESTAMP, default=datetime.utcnow)

class UserPreferences(Base):
    __tablename__ = "user_preferences"
    user_id = Column(PK, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    language = Column(String(10), default="en")
    currency = Column(String(10), default="USD")
    timezone = Column(String(50), default="UTC")
    created_at = Column(TIMESTAMP, default=datetime.utcnow)

class ActivityLog(Base):
    __tablename__ = "user_activity_logs"
    id = Column(PK, primary_key=True)
    user_id = Column(PK)  # null for admin actions not tied to a user
    activity_type = Column(String(50), nullable=False)
    description = Column(String(255))
    ip_address = Column(String(64))
    created_at = Column(TIMESTAMP, default=datetime.utcnow)

class AdminUser(Base):
    __tablename__ = "admin_users"
    id = Column(PK, primary_key=True)
    username = Column(String(50), unique=True, nullable=False)
    email = Column(String(100))
    password_hash = Column(String(255), nullable=False)
    role = Column(String(30), default="super_admin")
    created_at = Column(TIMESTAMP, default=datetime.utcnow)

    def set_password(self, raw):
        self.password_hash = generate_password_hash(raw)

    def check_password(self, raw):
        return check_password_hash(self.password_hash, raw)

class KVEntry(Base):
    __tablename__ = "kv_entries"
    key = Column(String(191), primary_key=True)
    value = Column(Text, nullable=False)  # JSON text
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow)

# ---------------------- BOOTSTRAP -------------------------
VIP_CATALOG = [
    # name, min points, cashback %, bonus multiplier
    ("Bronze", 0, "0.00", "1.00"),
    ("Silver", 1000, "1.00", "1.10"),
    ("Gold", 5000, "2.00", "1.25"),
    ("Platinum", 15000, "3.00", "1.50"),
    ("Diamond", 50000, "5.00", "2.00"),
]

REQUIRED_TABLES = ["users", "vip_levels", "user_vip_stats", "user_wallets", "transactions"]

def ensure_schema():
    Base.metadata.create_all(bind=engine)
    s = SessionLocal()
    try:
        for name, points, cashback, mult in VIP_CATALOG:
            if not s.query(VipLevel).filter_by(level_name=name).first():
                s.add(VipLevel(level_name=name, min_points_required=points,
                               cashback_percentage=Decimal(cashback), bonus_multiplier=Decimal(mult)))
        s.commit()
    finally:
        s.close()

def missing_tables():
    present = set(inspect(engine).get_table_names())
    return [t for t in REQUIRED_TABLES if t not in present]

def ensure_admin(username, password, email=None):
    """Create the admin account if it does not exist yet; returns True when created."""
    s = SessionLocal()
    try:
        if s.query(AdminUser).filter_by(username=username).first():
            return False
        a = AdminUser(username=username, email=email or f"{username}@casino.local", role="super_admin")
        a.set_password(password)
        s.add(a); s.commit()
        logger.info("Seeded admin user %s", username)
        return True
    finally:
        s.close()

# ---------------------- HELPERS ---------------------------
def as_money(x) -> float:
    # Normalize Decimals/Numerics to float for JSON
    if x is None:
        return 0.0
    if isinstance(x, Decimal):
        return float(x)
    return float(Decimal(str(x)))

def to_decimal(x) -> Decimal:
    return Decimal(str(x))

# Numeric(12,2) holds at most 10 integer digits
MAX_AMOUNT = Decimal("10000000000")
CENTS = Decimal("0.01")

def parse_money(raw) -> Decimal:
    """Amount rounded to cents. Raises ValueError("invalid_amount") for non-numbers or out-of-range values."""
    try:
        amount = Decimal(str(raw)).quantize(CENTS)
    except (InvalidOperation, ValueError):
        raise ValueError("invalid_amount")
    if not amount.is_finite() or abs(amount) >= MAX_AMOUNT:
        raise ValueError("invalid_amount")
    return amount

def jsonable(v):
    if isinstance(v, Decimal):
        return float(v)
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    return v

def row_to_dict(obj, exclude=("password_hash",)):
    return {c.key: jsonable(getattr(obj, c.key)) for c in inspect(obj).mapper.column_attrs
            if c.key not in exclude}

def mapping_to_dict(row):
    """Plain dict from a labelled query row."""
    return {k: jsonable(v) for k, v in row._mapping.items()}

def vip_level_for_points(s, points: int) -> VipLevel:
    return (s.query(VipLevel)
            .filter(VipLevel.min_points_required <= points)
            .order_by(VipLevel.min_points_required.desc())
            .first())

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

def email_valid(email: str) -> bool:
    return bool(EMAIL_RE.match(email or ""))

def password_valid(pw: str) -> bool:
    return len(pw or "") >= 6

def get_wallet(s, user_id) -> Wallet:
    w = s.query(Wallet).filter(Wallet.user_id == user_id).first()
    if not w: raise LookupError("wallet_not_found")
    return w

def credit(s, w: Wallet, amt: Decimal, tx_type="deposit", description=None, count_as_deposit=True) -> Transaction:
    before = to_decimal(w.balance or 0)
    w.balance = before + amt
    if count_as_deposit:
        w.total_deposited = to_decimal(w.total_deposited or 0) + amt
    w.updated_at = datetime.utcnow()
    tx = Transaction(user_id=w.user_id, transaction_type=tx_type, amount=amt, balance_before=before,
                     balance_after=w.balance, status="completed", description=description)
    s.add(tx); s.flush()
    return tx

def debit(s, w: Wallet, amt: Decimal, tx_type="withdrawal", description=None) -> Transaction:
    before = to_decimal(w.balance or 0)
    if before < amt: raise ValueError("insufficient_balance")
    w.balance = before - amt
    w.total_withdrawn = to_decimal(w.total_withdrawn or 0) + amt
    w.updated_at = datetime.utcnow()
    tx = Transaction(user_id=w.user_id, transaction_type=tx_type, amount=amt, balance_before=before,
                     balance_after=w.balance, status="completed", description=description)
    s.add(tx); s.flush()
    return tx

def log_activity(s, user_id, activity_type, description, ip_address=None):
    s.add(ActivityLog(user_id=user_id, activity_type=activity_type, description=description,
                      ip_address=ip_address or "unknown"))
