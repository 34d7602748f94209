import gzip
import json
import os

from conftest import signup
from models import SessionLocal, GameSession, Transaction, UserVipStats


def admin_get(client, headers, action, **params):
    qs = "&".join(f"{k}={v}" for k, v in params.items())
    return client.get(f"/admin_api.php?action={action}{'&' + qs if qs else ''}", headers=headers)


def admin_post(client, headers, action, body=None):
    return client.post(f"/admin_api.php?action={action}", headers=headers, json=body or {})


def make_users(client, *names):
    ids = []
    for n in names:
        r = signup(client, n)
        assert r.status_code == 201
        ids.append(r.get_json()["data"]["user_id"])
    return ids


def test_admin_login_rejects_bad_password(client):
    r = client.post("/api/admin/login", json={"username": "admin", "password": "nope"})
    assert r.status_code == 401


def test_admin_api_requires_admin_token(client, user_token):
    assert client.get("/admin_api.php?action=get_stats").status_code == 401
    r = client.get("/admin_api.php?action=get_stats", headers={"Authorization": f"Bearer {user_token}"})
    assert r.status_code == 403


def test_invalid_action(client, admin_headers):
    r = admin_get(client, admin_headers, "drop_tables")
    assert r.status_code == 400
    assert r.get_json()["error"] == "Invalid action"


def test_mutations_require_post(client, admin_headers):
    r = admin_get(client, admin_headers, "reset_all_balances")
    assert r.status_code == 405
    assert r.get_json()["error"] == "Method not allowed"


def test_get_stats(client, admin_headers):
    uid, _ = make_users(client, "ann", "ben")
    admin_post(client, admin_headers, "add_user_balance", {"user_id": uid, "amount": 25})
    s = SessionLocal()
    try:
        s.add(Transaction(user_id=uid, transaction_type="deposit", amount=40, status="completed"))
        s.add(Transaction(user_id=uid, transaction_type="withdrawal", amount=15, status="pending"))
        s.query(UserVipStats).filter_by(user_id=uid).update({"vip_level_id": 3})
        s.commit()
    finally:
        s.close()

    data = admin_get(client, admin_headers, "get_stats").get_json()["data"]
    assert data["total_users"] == 2
    assert data["today_new_users"] == 2
    assert data["vip_users"] == 1
    assert data["total_deposits"] == 1
    assert data["total_deposits_amount"] == 40.0
    assert data["total_withdrawals"] == 0
    assert data["pending_requests"] == 1


def test_get_users_paginates(client, admin_headers):
    make_users(client, "u1", "u2", "u3")
    body = admin_get(client, admin_headers, "get_users", page=1, limit=2).get_json()
    assert len(body["data"]) == 2
    assert body["data"][0]["username"] == "u3"
    assert body["data"][0]["vip_level"] == "Bronze"
    assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
    body = admin_get(client, admin_headers, "get_users", page=2, limit=2).get_json()
    assert [u["username"] for u in body["data"]] == ["u1"]


def test_get_user_details(client, admin_headers):
    (uid,) = make_users(client, "dora")
    admin_post(client, admin_headers, "add_user_balance", {"user_id": uid, "amount": 10, "reason": "welcome"})
    s = SessionLocal()
    try:
        s.add(GameSession(user_id=uid, game_type="slots", total_wagered=200, total_won=150, total_lost=50,
                          games_played=10))
        s.commit()
    finally:
        s.close()

    data = admin_get(client, admin_headers, "get_user_details", user_id=uid).get_json()["data"]
    assert data["username"] == "dora"
    assert "password_hash" not in data
    assert data["balance"] == 10.0
    assert data["vip_level"] == "Bronze"
    assert data["recent_transactions"][0]["description"] == "welcome"
    assert data["game_stats"][0]["game_type"] == "slots"
    assert data["game_stats"][0]["total_wagered"] == 200.0

    assert admin_get(client, admin_headers, "get_user_details").status_code == 400
    assert admin_get(client, admin_headers, "get_user_details", user_id=999).status_code == 404


def test_get_vip_stats_lists_every_level(client, admin_headers):
    make_users(client, "eve")
    data = admin_get(client, admin_headers, "get_vip_stats").get_json()["data"]
    assert [d["level_name"] for d in data] == ["Bronze", "Silver", "Gold", "Platinum", "Diamond"]
    assert data[0]["user_count"] == 1
    assert data[1]["user_count"] == 0


def test_get_transactions_filters(client, admin_headers):
    a, b = make_users(client, "fay", "gus")
    admin_post(client, admin_headers, "add_user_balance", {"user_id": a, "amount": 5})
    s = SessionLocal()
    try:
        s.add(Transaction(user_id=b, transaction_type="withdrawal", amount=3, status="pending"))
        s.commit()
    finally:
        s.close()

    body = admin_get(client, admin_headers, "get_transactions").get_json()
    assert body["pagination"]["total"] == 2
    body = admin_get(client, admin_headers, "get_transactions", type="withdrawal", status="pending").get_json()
    assert [t["username"] for t in body["data"]] == ["gus"]
    body = admin_get(client, admin_headers, "get_transactions", type="bonus").get_json()
    assert body["data"][0]["username"] == "fay"
    assert body["data"][0]["amount"] == 5.0


def test_get_game_stats(client, admin_headers):
    a, b = make_users(client, "hal", "ivy")
    s = SessionLocal()
    try:
        s.add_all([
            GameSession(user_id=a, game_type="slots", total_wagered=100, total_won=50, total_lost=50, games_played=4),
            GameSession(user_id=b, game_type="slots", total_wagered=50, total_won=0, total_lost=50, games_played=2),
            GameSession(user_id=a, game_type="blackjack", total_wagered=300, total_won=250, total_lost=50, games_played=5),
        ])
        s.commit()
    finally:
        s.close()
    data = admin_get(client, admin_headers, "get_game_stats").get_json()["data"]
    assert [d["game_type"] for d in data] == ["blackjack", "slots"]
    slots = data[1]
    assert slots["total_sessions"] == 2
    assert slots["unique_players"] == 2
    assert slots["total_wagered"] == 150.0


def test_update_user_status(client, admin_headers):
    (uid,) = make_users(client, "jon")
    r = admin_post(client, admin_headers, "update_user_status", {"user_id": uid, "status": False})
    assert r.get_json()["success"] is True
    r = admin_post(client, admin_headers, "update_user_status", {"user_id": uid, "status": False})
    assert r.status_code == 404
    r = admin_post(client, admin_headers, "update_user_status", {"user_id": uid})
    assert r.status_code == 400
    r = admin_post(client, admin_headers, "update_user_status", {"user_id": uid, "status": "active"})
    assert r.get_json()["success"] is True


def test_add_user_balance_records_bonus_transaction(client, admin_headers):
    (uid,) = make_users(client, "kim")
    r = admin_post(client, admin_headers, "add_user_balance", {"user_id": uid, "amount": "12.50"})
    assert r.status_code == 200
    assert r.get_json()["data"]["balance"] == 12.5
    admin_post(client, admin_headers, "add_user_balance", {"user_id": uid, "amount": 7.5})

    s = SessionLocal()
    try:
        txs = s.query(Transaction).filter_by(user_id=uid).order_by(Transaction.id).all()
        assert [t.transaction_type for t in txs] == ["bonus", "bonus"]
        assert float(txs[1].balance_before) == 12.5
        assert float(txs[1].balance_after) == 20.0
        assert txs[0].description == "Admin balance addition"
    finally:
        s.close()


def test_add_user_balance_validation(client, admin_headers):
    (uid,) = make_users(client, "lou")
    assert admin_post(client, admin_headers, "add_user_balance", {"user_id": uid}).status_code == 400
    r = admin_post(client, admin_headers, "add_user_balance", {"user_id": uid, "amount": -3})
    assert r.get_json()["error"] == "Amount must be greater than 0"
    assert admin_post(client, admin_headers, "add_user_balance", {"user_id": 999, "amount": 3}).status_code == 404


def test_reset_all_balances(client, admin_headers):
    a, b = make_users(client, "max", "ned")
    admin_post(client, admin_headers, "add_user_balance", {"user_id": a, "amount": 100})
    r = admin_post(client, admin_headers, "reset_all_balances")
    body = r.get_json()
    assert body["success"] is True
    assert body["affected_users"] == 2
    data = admin_get(client, admin_headers, "get_user_details", user_id=a).get_json()["data"]
    assert data["balance"] == 0.0
    assert data["total_deposited"] == 0.0


def test_user_activity_and_log_viewer(client, admin_headers):
    (uid,) = make_users(client, "ola")
    client.post("/api/auth/login", json={"identifier": "ola", "password": "secret1"})
    data = admin_get(client, admin_headers, "get_user_activity", user_id=uid).get_json()["data"]
    assert [d["activity_type"] for d in data] == ["login", "registration"]
    assert admin_get(client, admin_headers, "get_user_activity").status_code == 400

    body = admin_get(client, admin_headers, "get_activity_logs", activity_type="registration").get_json()
    assert body["pagination"]["total"] == 1


def test_search_users(client, admin_headers):
    make_users(client, "pat", "patricia", "quinn")
    data = admin_get(client, admin_headers, "search_users", q="PAT").get_json()["data"]
    assert sorted(u["username"] for u in data) == ["pat", "patricia"]
    assert admin_get(client, admin_headers, "search_users").status_code == 400


def test_export_formats(client, admin_headers):
    make_users(client, "rex")
    r = admin_post(client, admin_headers, "export", {"type": "users", "format": "json"})
    body = json.loads(r.get_data(as_text=True))
    assert body["total_records"] == 1
    assert body["data"][0]["username"] == "rex"
    assert "casino_export_users_" in r.headers["Content-Disposition"]

    r = admin_post(client, admin_headers, "export", {"type": "all", "format": "csv"})
    text = r.get_data(as_text=True)
    assert r.mimetype == "text/csv"
    assert "=== USERS ===" in text
    assert "rex" in text

    r = admin_post(client, admin_headers, "export", {"type": "transactions", "format": "xml"})
    assert r.mimetype == "application/xml"
    assert "<casino_export>" in r.get_data(as_text=True)


def test_backup_writes_snapshot(client, admin_headers, app):
    make_users(client, "sam")
    r = admin_post(client, admin_headers, "backup", {"compress": True})
    info = r.get_json()["backup_info"]
    assert info["compressed"] is True
    path = os.path.join(app.config["STORAGE_DIR"], "backups", info["filename"])
    with gzip.open(path, "rt") as fh:
        snap = json.load(fh)
    assert snap["tables"]["users"]["rows"][0]["username"] == "sam"


def test_admin_login_rejects_non_string_fields(client):
    r = client.post("/api/admin/login", json={"username": ["admin"], "password": "admin123"})
    assert r.status_code == 400
    assert r.get_json()["error"] == "invalid_fields"
    assert client.post("/api/admin/login", json=[]).status_code == 400


def test_add_user_balance_rejects_out_of_range_and_sub_cent(client, admin_headers):
    (uid,) = make_users(client, "tia")
    r = admin_post(client, admin_headers, "add_user_balance", {"user_id": uid, "amount": "1e30"})
    assert r.status_code == 400
    assert r.get_json()["error"] == "Invalid amount"
    r = admin_post(client, admin_headers, "add_user_balance", {"user_id": uid, "amount": "0.001"})
    assert r.status_code == 400
    assert r.get_json()["error"] == "Amount must be greater than 0"
    data = admin_get(client, admin_headers, "get_user_details", user_id=uid).get_json()["data"]
    assert data["balance"] == 0.0
    assert data["recent_transactions"] == []
