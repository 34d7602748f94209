import os, time, logging
from datetime import datetime, timedelta
from decimal import Decimal
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_jwt_extended import JWTManager, create_access_token, jwt_required, get_jwt_identity
from sqlalchemy import func, desc
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# ---------------------- ENV / CONFIG ----------------------
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    raise RuntimeError("SECRET_KEY environment variable is not set")

STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "file")
STORAGE_DIR = os.getenv("STORAGE_DIR", os.path.join(os.path.dirname(os.path.abspath(__file__)), "data"))
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")
JWT_EXPIRES_DAYS = int(os.getenv("JWT_EXPIRES_DAYS", "7"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("casino")

# models reads DATABASE_URL on import
from models import (SessionLocal, User, Wallet, UserVipStats, VipLevel, UserPreferences, Transaction, KVEntry,
                    ensure_schema, ensure_admin, as_money, parse_money, get_wallet, credit, debit,
                    log_activity, email_valid, password_valid)
from storage import create_store
from storage_api import storage_api
from admin_api import admin_api

app = Flask(__name__)
app.config["JWT_SECRET_KEY"] = SECRET_KEY
app.config["JSON_SORT_KEYS"] = False
app.config["STORAGE_DIR"] = STORAGE_DIR

CORS(app, supports_credentials=True)
jwt = JWTManager(app)

app.extensions["kv_store"] = create_store(STORAGE_BACKEND, root=STORAGE_DIR, session_factory=SessionLocal,
                                          kv_model=KVEntry)
app.register_blueprint(storage_api)
app.register_blueprint(admin_api)

# ---------------------- BOOTSTRAP -------------------------
ensure_schema()
ensure_admin(ADMIN_USERNAME, ADMIN_PASSWORD)
logger.info("Storage backend: %s (%s)", STORAGE_BACKEND, STORAGE_DIR)

# ---------------------- HELPERS ---------------------------
def client_ip():
    return request.headers.get("X-Forwarded-For", request.remote_addr or "unknown").split(",")[0].strip()

def issue_token(u: User):
    return create_access_token(identity=str(u.id), expires_delta=timedelta(days=JWT_EXPIRES_DAYS))

def get_user(s, identity):
    u = s.query(User).filter(User.id == int(identity), User.is_active.is_(True)).first()
    if not u: raise ValueError("user_not_found_or_inactive")
    return u

def json_object():
    d = request.get_json(force=True, silent=True)
    return d if isinstance(d, dict) else {}

def parse_amount(d):
    amount = parse_money(d.get("amount"))
    if amount <= 0: raise ValueError("amount_must_be_positive")
    return amount

def parse_pagination(default_limit=25, max_limit=100):
    limit = max(1, min(int(request.args.get("limit", default_limit)), max_limit))
    offset = max(0, int(request.args.get("offset", 0)))
    return limit, offset

def profile(s, u: User):
    w = s.query(Wallet).filter_by(user_id=u.id).first()
    row = (s.query(UserVipStats.total_points, VipLevel.level_name)
           .join(VipLevel, VipLevel.id == UserVipStats.vip_level_id)
           .filter(UserVipStats.user_id == u.id).first())
    return {
        "id": u.id, "username": u.username, "email": u.email,
        "first_name": u.first_name, "last_name": u.last_name,
        "is_verified": bool(u.is_verified),
        "created_at": u.created_at.isoformat() if u.created_at else None,
        "last_login": u.last_login.isoformat() if u.last_login else None,
        "balance": as_money(w.balance) if w else 0.0,
        "bonus_balance": as_money(w.bonus_balance) if w else 0.0,
        "vip_level": row.level_name if row else "Bronze",
        "points": row.total_points if row else 0,
    }

# ---------------------- AUTH ------------------------------
REQUIRED_SIGNUP_FIELDS = ["email", "password", "username", "first_name", "last_name"]

@app.post("/api/auth/register")
@app.post("/user_registration.php")
def register():
    d = json_object()
    for field in REQUIRED_SIGNUP_FIELDS:
        value = d.get(field)
        if value is not None and not isinstance(value, str):
            return {"error": f"Invalid field: {field}"}, 400
        if not (value or "").strip():
            return {"error": f"Missing required field: {field}"}, 400
    username = d["username"].strip()
    email = d["email"].strip().lower()
    password = d["password"]
    if not email_valid(email): return {"error": "Invalid email format"}, 400
    if not password_valid(password): return {"error": "Password must be at least 6 characters long"}, 400

    s = SessionLocal()
    try:
        if s.query(User).filter(User.email == email).first():
            return {"error": "Email already registered"}, 409
        if s.query(User).filter(func.lower(User.username) == username.lower()).first():
            return {"error": "Username already taken"}, 409

        u = User(username=username, email=email, first_name=d["first_name"].strip(),
                 last_name=d["last_name"].strip(), is_verified=False, is_active=True)
        u.set_password(password)
        s.add(u); s.flush()
        # new accounts start at zero balance, Bronze tier
        s.add(Wallet(user_id=u.id, balance=Decimal("0.00")))
        s.add(UserVipStats(user_id=u.id, vip_level_id=1))
        s.add(UserPreferences(user_id=u.id))
        log_activity(s, u.id, "registration", "User account created", client_ip())
        s.commit()
        logger.info("Registered user %s (id=%s)", u.username, u.id)
        return {
            "success": True,
            "message": "User registered successfully",
            "data": {"user_id": u.id, "username": u.username, "email": u.email,
                     "balance": 0.0, "vip_level": "Bronze", "points": 0},
            "access_token": issue_token(u),
        }, 201
    except Exception as e:
        s.rollback()
        logger.exception("Registration failed")
        return {"error": f"Registration failed: {e}"}, 500
    finally:
        s.close()

@app.post("/api/auth/login")
def login():
    d = json_object()
    ident = d.get("identifier") or d.get("username") or ""
    pw = d.get("password") or ""
    if not isinstance(ident, str) or not isinstance(pw, str): return {"error": "invalid_fields"}, 400
    ident = ident.strip()
    if not ident or not pw: return {"error": "missing_fields"}, 400
    s = SessionLocal()
    try:
        u = s.query(User).filter((User.email == ident.lower()) | (func.lower(User.username) == ident.lower())).first()
        if not u or not u.check_password(pw): return {"error": "invalid_credentials"}, 401
        if not u.is_active: return {"error": "account_banned"}, 403
        u.last_login = datetime.utcnow()
        log_activity(s, u.id, "login", "User logged in", client_ip())
        s.commit()
        return {"access_token": issue_token(u), "user": {"id": u.id, "username": u.username, "email": u.email}}
    finally:
        s.close()

# ---------------------- PROFILE ---------------------------
@app.get("/api/users/me")
@jwt_required()
def me():
    s = SessionLocal()
    try:
        u = get_user(s, get_jwt_identity())
        return {"user": profile(s, u)}
    except ValueError as e:
        return {"error": str(e)}, 404
    finally:
        s.close()

# ---------------------- WALLET ----------------------------
@app.get("/api/users/me/balance")
@jwt_required()
def my_balance():
    s = SessionLocal()
    try:
        u = get_user(s, get_jwt_identity())
        return {"balance": as_money(get_wallet(s, u.id).balance)}
    except (ValueError, LookupError) as e:
        return {"error": str(e)}, 404
    finally:
        s.close()

@app.post("/api/wallet/deposit")
@jwt_required()
def deposit():
    d = json_object()
    try:
        amount = parse_amount(d)
    except ValueError as e:
        return {"error": str(e)}, 400

    s = SessionLocal()
    try:
        u = get_user(s, get_jwt_identity())
        w = get_wallet(s, u.id)
        tx = credit(s, w, amount, "deposit", str(d.get("description") or "Wallet deposit"))
        s.commit()
        return {"ok": True, "balance": as_money(w.balance), "transaction_id": tx.id}
    except (ValueError, LookupError) as e:
        s.rollback(); return {"error": str(e)}, 400
    except Exception:
        s.rollback(); logger.exception("Deposit failed")
        return {"error": "server_error"}, 500
    finally:
        s.close()

@app.post("/api/wallet/withdraw")
@jwt_required()
def withdraw():
    d = json_object()
    try:
        amount = parse_amount(d)
    except ValueError as e:
        return {"error": str(e)}, 400

    s = SessionLocal()
    try:
        u = get_user(s, get_jwt_identity())
        w = get_wallet(s, u.id)
        tx = debit(s, w, amount, "withdrawal", str(d.get("description") or "Wallet withdrawal"))
        s.commit()
        return {"ok": True, "balance": as_money(w.balance), "transaction_id": tx.id}
    except (ValueError, LookupError) as e:
        s.rollback(); return {"error": str(e)}, 400
    except Exception:
        s.rollback(); logger.exception("Withdrawal failed")
        return {"error": "server_error"}, 500
    finally:
        s.close()

# ---------------------- HISTORY ---------------------------
@app.get("/api/history/transactions")
@jwt_required()
def history_transactions():
    """Return recent wallet transactions for the authenticated user, newest first."""
    try:
        limit, offset = parse_pagination()
    except ValueError:
        return {"error": "bad_pagination"}, 400

    s = SessionLocal()
    try:
        u = get_user(s, get_jwt_identity())
        q = (
            s.query(Transaction)
            .filter(Transaction.user_id == u.id)
            .order_by(desc(Transaction.created_at), desc(Transaction.id))
            .limit(limit).offset(offset)
        )
        rows = [{
            "id": t.id,
            "type": t.transaction_type,
            "amount": as_money(t.amount),
            "balance_before": as_money(t.balance_before),
            "balance_after": as_money(t.balance_after),
            "status": t.status,
            "description": t.description,
            "created_at": t.created_at.isoformat(),
        } for t in q.all()]
        return jsonify(rows)
    except ValueError as e:
        return {"error": str(e)}, 404
    finally:
        s.close()

# ---------------------- HEALTH ----------------------------
@app.get("/healthz")
def health():
    store = app.extensions["kv_store"]
    try:
        writable = store.check_writable()
        return {"ok": True, "writable": writable, "backend": store.name, "time": int(time.time() * 1000)}
    except Exception as e:
        logger.warning("Storage writability check failed: %s", e)
        return {"ok": True, "writable": False, "backend": store.name, "error": str(e)}

if __name__ == "__main__":
    port = int(os.getenv("PORT", "8080"))
    app.run(host="0.0.0.0", port=port)
