"""
Data export (JSON / CSV / XML) and JSON snapshot backups of the casino tables.
"""
import os, io, csv, json, gzip, logging
from datetime import datetime
from xml.etree import ElementTree as ET
from sqlalchemy import func
from models import (Base, User, Wallet, UserVipStats, VipLevel, Transaction, GameSession,
                    mapping_to_dict, row_to_dict, log_activity)

logger = logging.getLogger(__name__)

EXPORT_TYPES = ("users", "transactions", "vip_stats", "game_sessions", "all")
EXPORT_FORMATS = {"json": "application/json", "csv": "text/csv", "xml": "application/xml"}
STRUCTURE_TABLES = ("users", "user_wallets", "user_vip_stats")

# ---------------------- EXPORT ----------------------------
def export_users(s):
    q = (s.query(User.id, User.username, User.email, User.first_name, User.last_name, User.is_verified,
                 User.is_active, User.created_at, User.last_login,
                 Wallet.balance, Wallet.bonus_balance, Wallet.total_deposited, Wallet.total_withdrawn,
                 UserVipStats.total_points, UserVipStats.lifetime_wagered, UserVipStats.lifetime_won,
                 UserVipStats.lifetime_lost, VipLevel.level_name.label("vip_level"))
         .outerjoin(Wallet, Wallet.user_id == User.id)
         .outerjoin(UserVipStats, UserVipStats.user_id == User.id)
         .outerjoin(VipLevel, VipLevel.id == UserVipStats.vip_level_id)
         .order_by(User.created_at.desc(), User.id.desc()))
    return [mapping_to_dict(r) for r in q.all()]

def export_transactions(s):
    q = (s.query(Transaction.id, Transaction.transaction_type, Transaction.amount, Transaction.balance_before,
                 Transaction.balance_after, Transaction.status, Transaction.description, Transaction.created_at,
                 User.username, User.email)
         .join(User, User.id == Transaction.user_id)
         .order_by(Transaction.created_at.desc(), Transaction.id.desc()))
    return [mapping_to_dict(r) for r in q.all()]

def export_vip_stats(s):
    q = (s.query(VipLevel.level_name, VipLevel.min_points_required, VipLevel.cashback_percentage,
                 VipLevel.bonus_multiplier,
                 func.count(UserVipStats.user_id).label("user_count"),
                 func.avg(UserVipStats.total_points).label("avg_points"),
                 func.sum(UserVipStats.lifetime_wagered).label("total_wagered"),
                 func.sum(UserVipStats.lifetime_won).label("total_won"),
                 func.sum(UserVipStats.lifetime_lost).label("total_lost"))
         .outerjoin(UserVipStats, UserVipStats.vip_level_id == VipLevel.id)
         .group_by(VipLevel.id, VipLevel.level_name, VipLevel.min_points_required,
                   VipLevel.cashback_percentage, VipLevel.bonus_multiplier)
         .order_by(VipLevel.min_points_required.asc()))
    return [mapping_to_dict(r) for r in q.all()]

def export_game_sessions(s):
    q = (s.query(GameSession.id, GameSession.game_type, GameSession.total_wagered, GameSession.total_won,
                 GameSession.total_lost, GameSession.games_played, GameSession.created_at,
                 User.username, User.email)
         .join(User, User.id == GameSession.user_id)
         .order_by(GameSession.created_at.desc(), GameSession.id.desc()))
    return [mapping_to_dict(r) for r in q.all()]

def export_data(s, export_type="all"):
    if export_type == "users": return export_users(s)
    if export_type == "transactions": return export_transactions(s)
    if export_type == "vip_stats": return export_vip_stats(s)
    if export_type == "game_sessions": return export_game_sessions(s)
    return {
        "users": export_users(s),
        "transactions": export_transactions(s),
        "vip_stats": export_vip_stats(s),
        "game_sessions": export_game_sessions(s),
        "vip_levels": [row_to_dict(v) for v in s.query(VipLevel).order_by(VipLevel.id).all()],
        "export_metadata": {
            "exported_at": datetime.utcnow().isoformat(),
            "total_tables": len(Base.metadata.tables),
        },
    }

def _tables(data):
    """(name, rows) pairs; a flat list is a single unnamed table."""
    if isinstance(data, dict):
        return [(k, v) for k, v in data.items() if k != "export_metadata"]
    return [(None, data)]

def to_csv(data) -> str:
    buf = io.StringIO()
    w = csv.writer(buf)
    for name, rows in _tables(data):
        if name:
            w.writerow([f"=== {name.upper()} ==="])
        if rows:
            cols = list(rows[0].keys())
            w.writerow(cols)
            for r in rows:
                w.writerow(["" if r.get(c) is None else r.get(c) for c in cols])
        if name:
            w.writerow([])
    return buf.getvalue()

def to_xml(data, root_name="records") -> str:
    root = ET.Element("casino_export")
    for name, rows in _tables(data):
        node = ET.SubElement(root, name or root_name)
        for r in rows:
            rec = ET.SubElement(node, "record")
            for k, v in r.items():
                ET.SubElement(rec, k).text = "" if v is None else str(v)
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(root, encoding="unicode")

def count_records(data) -> int:
    return sum(len(rows) for _, rows in _tables(data))

def render_export(data, export_type, fmt):
    """Returns (body, mimetype, filename)."""
    fmt = fmt if fmt in EXPORT_FORMATS else "json"
    timestamp = datetime.utcnow().strftime("%Y-%m-%d_%H-%M-%S")
    filename = f"casino_export_{export_type}_{timestamp}.{fmt}"
    if fmt == "csv":
        body = to_csv(data)
    elif fmt == "xml":
        body = to_xml(data, export_type)
    else:
        body = json.dumps({
            "success": True,
            "export_type": export_type,
            "format": fmt,
            "timestamp": timestamp,
            "total_records": count_records(data),
            "data": data,
        }, indent=2, ensure_ascii=False)
    return body, EXPORT_FORMATS[fmt], filename

# ---------------------- BACKUP ----------------------------
def format_bytes(size: int) -> str:
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{round(size, 2)} {unit}"
        size /= 1024
    return f"{round(size, 2)} GB"

def snapshot(s, backup_type="full", include_data=True):
    tables = {}
    for name, table in Base.metadata.tables.items():
        if backup_type == "structure" and name not in STRUCTURE_TABLES:
            continue
        entry = {"columns": [{"name": c.name, "type": str(c.type)} for c in table.columns]}
        if include_data:
            entry["rows"] = [mapping_to_dict(r) for r in s.execute(table.select()).all()]
        tables[name] = entry
    return {
        "generated_at": datetime.utcnow().isoformat(),
        "type": backup_type,
        "include_data": include_data,
        "tables": tables,
    }

def prune_backups(backup_dir, keep=10):
    files = sorted(
        (f for f in os.listdir(backup_dir) if f.startswith("casino_backup_")),
        key=lambda f: os.path.getmtime(os.path.join(backup_dir, f)),
        reverse=True,
    )
    removed = files[keep:]
    for f in removed:
        os.remove(os.path.join(backup_dir, f))
    return removed

def create_backup(s, backup_dir, backup_type="full", include_data=True, compress=False, keep=10, ip_address=None):
    os.makedirs(backup_dir, exist_ok=True)
    timestamp = datetime.utcnow().strftime("%Y-%m-%d_%H-%M-%S-%f")
    filename = f"casino_backup_{backup_type}_{timestamp}.json"
    payload = json.dumps(snapshot(s, backup_type, include_data), indent=2, ensure_ascii=False).encode("utf-8")
    if compress:
        filename += ".gz"
        payload = gzip.compress(payload, compresslevel=9)
    path = os.path.join(backup_dir, filename)
    with open(path, "wb") as fh:
        fh.write(payload)
    size = os.path.getsize(path)

    log_activity(s, None, "backup", f"Database backup created: {filename} ({format_bytes(size)})", ip_address)
    s.commit()
    removed = prune_backups(backup_dir, keep)
    if removed:
        logger.info("Pruned %d old backups", len(removed))
    logger.info("Backup written to %s", path)
    return {
        "filename": filename,
        "type": backup_type,
        "size": format_bytes(size),
        "compressed": bool(compress),
        "created_at": datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S"),
    }
