from urllib.parse import urlsplit

import requests

from storage_sync import StorageClient, LocalMirror, SyncAgent


class FlaskResponse:
    def __init__(self, resp):
        self.status_code = resp.status_code
        self._resp = resp

    def json(self):
        data = self._resp.get_json()
        if data is None:
            raise ValueError("no json body")
        return data


class FlaskSession:
    """requests.Session look-alike that routes calls into the Flask test client."""

    def __init__(self, client):
        self.client = client
        self.calls = []

    def _path(self, url):
        return urlsplit(url).path

    def get(self, url, params=None, timeout=None):
        self.calls.append(("GET", params))
        return FlaskResponse(self.client.get(self._path(url), query_string=params))

    def post(self, url, params=None, json=None, timeout=None):
        self.calls.append(("POST", params))
        return FlaskResponse(self.client.post(self._path(url), query_string=params, json=json))


class DownSession:
    def get(self, *a, **kw):
        raise requests.ConnectionError("server down")

    post = get


def make_agent(client, tmp_path):
    session = FlaskSession(client)
    mirror = LocalMirror(str(tmp_path / "local" / "mirror.json"))
    return SyncAgent(StorageClient("http://testserver", session=session), mirror), session


def test_client_roundtrip(client):
    c = StorageClient("http://testserver/", session=FlaskSession(client))
    assert c.set("demo_users", [{"id": 1}]) == {"success": True, "data": True}
    assert c.get("demo_users")["data"] == [{"id": 1}]
    assert c.set_batch({"notifications": ["hi"]})["success"] is True
    assert "notifications" in c.get_all()["data"]
    assert sorted(c.list_keys()["data"]) == ["demo_users", "notifications"]


def test_client_reports_server_errors_without_raising(client):
    c = StorageClient("http://testserver", session=FlaskSession(client))
    r = c.get("passwords")
    assert r == {"success": False, "error": "Key not allowed"}


def test_client_swallows_network_errors():
    c = StorageClient("http://nowhere", session=DownSession())
    r = c.get("demo_users")
    assert r["success"] is False
    assert "server down" in r["error"]


def test_local_mirror_tolerates_missing_and_broken_files(tmp_path):
    m = LocalMirror(str(tmp_path / "m.json"))
    assert m.read("x") is None
    (tmp_path / "m.json").write_text("{{{")
    assert m.keys() == []
    m.write("demo_users", [])
    assert m.read("demo_users") == []


def test_pull_initial_copies_server_values(client, tmp_path):
    client.post("/storage_api.php?action=set", json={"key": "demo_wallets", "value": {"1": 5}})
    agent, _ = make_agent(client, tmp_path)
    assert agent.pull_initial() == ["demo_wallets"]
    assert agent.mirror.read("demo_wallets") == {"1": 5}
    assert agent.mirror.read("demo_users") is None


def test_write_pushes_synced_keys_only(client, tmp_path):
    agent, session = make_agent(client, tmp_path)
    assert agent.write("balance:alice", 42)["success"] is True
    assert agent.write("theme", "dark") is None
    assert agent.mirror.read("theme") == "dark"
    assert len([c for c in session.calls if c[0] == "POST"]) == 1
    assert client.get("/storage_api.php?action=get&key=balance:alice").get_json()["data"] == 42


def test_reconcile_pushes_known_and_prefix_keys(client, tmp_path):
    agent, _ = make_agent(client, tmp_path)
    agent.mirror.write("demo_users", [{"id": 7}])
    agent.mirror.write("sec_code:bob", "9999")
    agent.mirror.write("unrelated", 1)
    assert sorted(agent.reconcile()) == ["demo_users", "sec_code:bob"]
    assert client.get("/storage_api.php?action=get&key=sec_code:bob").get_json()["data"] == "9999"


def test_last_writer_wins(client, tmp_path):
    a, _ = make_agent(client, tmp_path / "a")
    b, _ = make_agent(client, tmp_path / "b")
    a.write("notifications", ["from a"])
    b.write("notifications", ["from b"])
    assert client.get("/storage_api.php?action=get&key=notifications").get_json()["data"] == ["from b"]


def test_run_loops_given_iterations(client, tmp_path, monkeypatch):
    sleeps = []
    monkeypatch.setattr("storage_sync.time.sleep", sleeps.append)
    agent, _ = make_agent(client, tmp_path)
    agent.mirror.write("demo_users", [])
    assert agent.run(interval=0.5, iterations=3) == 3
    assert sleeps == [0.5, 0.5]
