import os, math, logging
from datetime import datetime, timedelta
from functools import wraps
from flask import Blueprint, request, current_app, Response
from flask_jwt_extended import create_access_token, verify_jwt_in_request, get_jwt
from sqlalchemy import func, or_, update
from models import (SessionLocal, AdminUser, User, Wallet, UserVipStats, VipLevel, Transaction, GameSession,
                    ActivityLog, as_money, parse_money, mapping_to_dict, row_to_dict, credit, log_activity)
from reports import export_data, render_export, create_backup, EXPORT_TYPES

logger = logging.getLogger(__name__)

MAX_PAGE_LIMIT = int(os.getenv("MAX_PAGE_LIMIT", "100"))
BACKUP_KEEP = int(os.getenv("BACKUP_KEEP", "10"))

admin_api = Blueprint("admin_api", __name__)

# ---------------------- AUTH ------------------------------
def admin_required(f):
    """Require a JWT carrying the admin role claim."""
    @wraps(f)
    def decorated(*args, **kwargs):
        verify_jwt_in_request()
        if get_jwt().get("role") != "admin":
            return {"error": "Admin access required"}, 403
        return f(*args, **kwargs)
    return decorated

@admin_api.post("/api/admin/login")
def admin_login():
    d = json_body()
    username = d.get("username") or ""
    pw = d.get("password") or ""
    if not isinstance(username, str) or not isinstance(pw, str): return {"error": "invalid_fields"}, 400
    username = username.strip()
    if not username or not pw: return {"error": "missing_fields"}, 400
    s = SessionLocal()
    try:
        a = s.query(AdminUser).filter_by(username=username).first()
        if not a or not a.check_password(pw):
            logger.warning("Failed admin login for %s", username)
            return {"error": "invalid_credentials"}, 401
        token = create_access_token(identity=f"admin:{a.id}", additional_claims={"role": "admin"},
                                    expires_delta=timedelta(hours=12))
        return {"access_token": token, "admin": {"id": a.id, "username": a.username, "role": a.role}}
    finally:
        s.close()

# ---------------------- HELPERS ---------------------------
class BadRequest(ValueError):
    def __init__(self, message, code=400):
        super().__init__(message)
        self.code = code

def client_ip():
    return request.headers.get("X-Forwarded-For", request.remote_addr or "unknown").split(",")[0].strip()

def json_body():
    d = request.get_json(force=True, silent=True)
    return d if isinstance(d, dict) else {}

def require_post():
    if request.method != "POST":
        raise BadRequest("Method not allowed", 405)

def int_arg(name, default=None, source=None):
    raw = (source if source is not None else request.args).get(name, default)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise BadRequest(f"Invalid {name}")

def page_args(default_limit=20):
    page = max(1, int_arg("page", 1) or 1)
    limit = max(1, min(int_arg("limit", default_limit) or default_limit, MAX_PAGE_LIMIT))
    return page, limit, (page - 1) * limit

def pagination(page, limit, total):
    return {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if limit else 0}

def user_overview_query(s):
    return (s.query(User.id, User.username, User.email, User.first_name, User.last_name, User.is_verified,
                    User.is_active, User.created_at, User.last_login, UserVipStats.total_points,
                    VipLevel.level_name.label("vip_level"), Wallet.balance, Wallet.bonus_balance,
                    Wallet.total_deposited, Wallet.total_withdrawn)
            .outerjoin(UserVipStats, UserVipStats.user_id == User.id)
            .outerjoin(VipLevel, VipLevel.id == UserVipStats.vip_level_id)
            .outerjoin(Wallet, Wallet.user_id == User.id))

# ---------------------- ACTIONS ---------------------------
def get_stats(s):
    """Dashboard counters."""
    total_users = s.query(func.count(User.id)).filter(User.is_active.is_(True)).scalar()
    vip_users = s.query(func.count(UserVipStats.id)).filter(UserVipStats.vip_level_id > 1).scalar()
    dep_count, dep_amount = (s.query(func.count(Transaction.id), func.sum(Transaction.amount))
                             .filter(Transaction.transaction_type == "deposit", Transaction.status == "completed")
                             .one())
    wd_count, wd_amount = (s.query(func.count(Transaction.id), func.sum(Transaction.amount))
                           .filter(Transaction.transaction_type == "withdrawal", Transaction.status == "completed")
                           .one())
    pending = s.query(func.count(Transaction.id)).filter(Transaction.status == "pending").scalar()
    today = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    today_users = s.query(func.count(User.id)).filter(User.created_at >= today).scalar()
    return {"success": True, "data": {
        "total_users": int(total_users or 0),
        "vip_users": int(vip_users or 0),
        "total_deposits": int(dep_count or 0),
        "total_deposits_amount": as_money(dep_amount),
        "total_withdrawals": int(wd_count or 0),
        "total_withdrawals_amount": as_money(wd_amount),
        "pending_requests": int(pending or 0),
        "today_new_users": int(today_users or 0),
    }}

def get_users(s):
    page, limit, offset = page_args()
    rows = (user_overview_query(s).order_by(User.created_at.desc(), User.id.desc())
            .limit(limit).offset(offset).all())
    total = s.query(func.count(User.id)).scalar()
    return {"success": True, "data": [mapping_to_dict(r) for r in rows],
            "pagination": pagination(page, limit, total)}

def get_user_details(s):
    user_id = int_arg("user_id")
    if not user_id: raise BadRequest("User ID is required")
    u = s.get(User, user_id)
    if not u: raise BadRequest("User not found", 404)

    data = row_to_dict(u)
    w = s.query(Wallet).filter_by(user_id=u.id).first()
    if w:
        data.update({k: as_money(getattr(w, k)) for k in
                     ("balance", "bonus_balance", "locked_balance", "total_deposited", "total_withdrawn")})
    vip = (s.query(UserVipStats, VipLevel).join(VipLevel, VipLevel.id == UserVipStats.vip_level_id)
           .filter(UserVipStats.user_id == u.id).first())
    if vip:
        stats, level = vip
        data.update({
            "total_points": stats.total_points,
            "lifetime_wagered": as_money(stats.lifetime_wagered),
            "lifetime_won": as_money(stats.lifetime_won),
            "lifetime_lost": as_money(stats.lifetime_lost),
            "vip_level": level.level_name,
            "cashback_percentage": as_money(level.cashback_percentage),
            "bonus_multiplier": as_money(level.bonus_multiplier),
        })
    recent = (s.query(Transaction).filter(Transaction.user_id == u.id)
              .order_by(Transaction.created_at.desc(), Transaction.id.desc()).limit(10).all())
    data["recent_transactions"] = [row_to_dict(t) for t in recent]
    games = (s.query(GameSession.game_type,
                     func.count(GameSession.id).label("games_played"),
                     func.sum(GameSession.total_wagered).label("total_wagered"),
                     func.sum(GameSession.total_won).label("total_won"),
                     func.sum(GameSession.total_lost).label("total_lost"))
             .filter(GameSession.user_id == u.id).group_by(GameSession.game_type).all())
    data["game_stats"] = [mapping_to_dict(g) for g in games]
    return {"success": True, "data": data}

def get_vip_stats(s):
    rows = (s.query(VipLevel.level_name, VipLevel.min_points_required, VipLevel.cashback_percentage,
                    func.count(UserVipStats.user_id).label("user_count"),
                    func.avg(UserVipStats.total_points).label("avg_points"),
                    func.sum(UserVipStats.lifetime_wagered).label("total_wagered"))
            .outerjoin(UserVipStats, UserVipStats.vip_level_id == VipLevel.id)
            .group_by(VipLevel.id, VipLevel.level_name, VipLevel.min_points_required, VipLevel.cashback_percentage)
            .order_by(VipLevel.min_points_required.asc()).all())
    return {"success": True, "data": [mapping_to_dict(r) for r in rows]}

def get_transactions(s):
    page, limit, offset = page_args()
    q = (s.query(Transaction.id, Transaction.user_id, Transaction.transaction_type, Transaction.amount,
                 Transaction.balance_before, Transaction.balance_after, Transaction.status,
                 Transaction.description, Transaction.created_at, User.username, User.email)
         .join(User, User.id == Transaction.user_id))
    tx_type = request.args.get("type")
    status = request.args.get("status")
    if tx_type: q = q.filter(Transaction.transaction_type == tx_type)
    if status: q = q.filter(Transaction.status == status)
    total = q.order_by(None).count()
    rows = q.order_by(Transaction.created_at.desc(), Transaction.id.desc()).limit(limit).offset(offset).all()
    return {"success": True, "data": [mapping_to_dict(r) for r in rows],
            "pagination": pagination(page, limit, total)}

def get_game_stats(s):
    total_wagered = func.coalesce(func.sum(GameSession.total_wagered), 0)
    rows = (s.query(GameSession.game_type,
                    func.count(GameSession.id).label("total_sessions"),
                    func.count(func.distinct(GameSession.user_id)).label("unique_players"),
                    total_wagered.label("total_wagered"),
                    func.sum(GameSession.total_won).label("total_won"),
                    func.sum(GameSession.total_lost).label("total_lost"),
                    func.avg(GameSession.total_wagered).label("avg_wagered"))
            .group_by(GameSession.game_type)
            .order_by(total_wagered.desc()).all())
    return {"success": True, "data": [mapping_to_dict(r) for r in rows]}

def update_user_status(s):
    require_post()
    d = json_body()
    user_id = int_arg("user_id", source=d)
    if not user_id or "status" not in d or d["status"] in (None, ""):
        raise BadRequest("User ID and status are required")
    status = d["status"]
    if isinstance(status, str):
        status = status.strip().lower() in ("1", "true", "active", "yes")
    u = s.get(User, user_id)
    if not u or bool(u.is_active) == bool(status):
        raise BadRequest("User not found or no changes made", 404)
    u.is_active = bool(status)
    log_activity(s, u.id, "admin_action", f"Admin set account {'active' if status else 'banned'}", client_ip())
    s.commit()
    logger.info("Admin set user %s is_active=%s", u.id, u.is_active)
    return {"success": True, "message": "User status updated successfully"}

def add_user_balance(s):
    require_post()
    d = json_body()
    user_id = int_arg("user_id", source=d)
    if not user_id or d.get("amount") in (None, "", 0):
        raise BadRequest("User ID and amount are required")
    try:
        amount = parse_money(d["amount"])
    except ValueError:
        raise BadRequest("Invalid amount")
    if amount <= 0:
        raise BadRequest("Amount must be greater than 0")
    reason = str(d.get("reason") or "Admin balance addition")

    w = s.query(Wallet).filter_by(user_id=user_id).first()
    if not w: raise BadRequest("User wallet not found", 404)
    try:
        tx = credit(s, w, amount, "bonus", reason)
        log_activity(s, user_id, "admin_action", f"Admin added {amount} to balance: {reason}", client_ip())
        s.commit()
    except Exception:
        s.rollback()
        raise
    logger.info("Admin credited user %s with %s", user_id, amount)
    return {"success": True, "message": "Balance added successfully",
            "data": {"balance": as_money(w.balance), "transaction_id": tx.id}}

def reset_all_balances(s):
    require_post()
    now = datetime.utcnow()
    try:
        res = s.execute(update(Wallet).values(balance=0, bonus_balance=0, locked_balance=0, total_deposited=0,
                                              total_withdrawn=0, updated_at=now))
        affected = res.rowcount
        s.execute(update(UserVipStats).values(total_points=0, current_month_points=0, lifetime_wagered=0,
                                              lifetime_won=0, lifetime_lost=0, updated_at=now))
        log_activity(s, None, "admin_action", "Admin reset all user balances to zero", client_ip())
        s.commit()
    except Exception:
        s.rollback()
        raise
    logger.warning("Admin reset %d wallet balances", affected)
    return {"success": True, "message": f"Successfully reset {affected} user balances to $0.00",
            "affected_users": affected}

def get_user_activity(s):
    user_id = int_arg("user_id")
    if not user_id: raise BadRequest("User ID is required")
    limit = max(1, min(int_arg("limit", 50) or 50, MAX_PAGE_LIMIT))
    rows = (s.query(ActivityLog).filter(ActivityLog.user_id == user_id)
            .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(limit).all())
    return {"success": True, "data": [row_to_dict(r) for r in rows]}

def get_activity_logs(s):
    page, limit, offset = page_args(50)
    q = s.query(ActivityLog)
    activity_type = request.args.get("activity_type")
    if activity_type: q = q.filter(ActivityLog.activity_type == activity_type)
    total = q.count()
    rows = q.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(limit).offset(offset).all()
    return {"success": True, "data": [row_to_dict(r) for r in rows], "pagination": pagination(page, limit, total)}

def search_users(s):
    term = (request.args.get("q") or "").strip()
    if not term: raise BadRequest("Search query is required")
    limit = max(1, min(int_arg("limit", 20) or 20, MAX_PAGE_LIMIT))
    like = f"%{term}%"
    rows = (user_overview_query(s)
            .filter(or_(User.username.ilike(like), User.email.ilike(like),
                        User.first_name.ilike(like), User.last_name.ilike(like)))
            .order_by(User.created_at.desc(), User.id.desc()).limit(limit).all())
    return {"success": True, "data": [mapping_to_dict(r) for r in rows]}

def export(s):
    require_post()
    d = json_body()
    export_type = d.get("type") or "all"
    if export_type not in EXPORT_TYPES: export_type = "all"
    data = export_data(s, export_type)
    body, mimetype, filename = render_export(data, export_type, d.get("format") or "json")
    return Response(body, mimetype=mimetype,
                    headers={"Content-Disposition": f'attachment; filename="{filename}"'})

def backup(s):
    require_post()
    d = json_body()
    backup_dir = os.path.join(current_app.config["STORAGE_DIR"], "backups")
    info = create_backup(s, backup_dir, backup_type=d.get("type") or "full",
                         include_data=d.get("include_data", True), compress=bool(d.get("compress")),
                         keep=BACKUP_KEEP, ip_address=client_ip())
    return {"success": True, "message": "Database backup created successfully", "backup_info": info}

ACTIONS = {
    "get_stats": (get_stats, "get dashboard stats"),
    "get_users": (get_users, "get users"),
    "get_user_details": (get_user_details, "get user details"),
    "get_vip_stats": (get_vip_stats, "get VIP stats"),
    "get_transactions": (get_transactions, "get transactions"),
    "get_game_stats": (get_game_stats, "get game stats"),
    "update_user_status": (update_user_status, "update user status"),
    "add_user_balance": (add_user_balance, "add user balance"),
    "reset_all_balances": (reset_all_balances, "reset all balances"),
    "get_user_activity": (get_user_activity, "get user activity"),
    "get_activity_logs": (get_activity_logs, "get activity logs"),
    "search_users": (search_users, "search users"),
    "export": (export, "export data"),
    "backup": (backup, "create backup"),
}

@admin_api.route("/admin_api.php", methods=["GET", "POST"])
@admin_api.route("/api/admin", methods=["GET", "POST"])
@admin_required
def dispatch():
    action = request.args.get("action", "")
    if action not in ACTIONS:
        return {"error": "Invalid action"}, 400
    handler, label = ACTIONS[action]
    s = SessionLocal()
    try:
        return handler(s)
    except BadRequest as e:
        s.rollback()
        return {"error": str(e)}, e.code
    except Exception as e:
        s.rollback()
        logger.exception("Admin action %s failed", action)
        return {"error": f"Failed to {label}: {e}"}, 500
    finally:
        s.close()
