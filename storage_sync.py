"""
Client-side mirror of the KV storage API.

A local JSON file plays the part of the browser's localStorage. The agent pulls
server values once, pushes local writes as they happen, and periodically
re-pushes every synced key. There is no ordering or conflict detection: the
last write to reach the server wins.
"""
import os, json, time, logging
import requests
from storage import is_prefix_key

logger = logging.getLogger(__name__)

SYNC_KEYS = [
    "demo_users",
    "demo_wallets",
    "demo_transactions",
    "withdrawRequests",
    "depositRequests",
    "vip_requests",
    "transfer_requests",
    "notifications",
]


class StorageClient:
    def __init__(self, base_url, session=None, timeout=10, path="/storage_api.php"):
        self.url = base_url.rstrip("/") + path
        self.session = session or requests.Session()
        self.timeout = timeout

    def _call(self, method, action, params=None, body=None):
        try:
            if method == "GET":
                r = self.session.get(self.url, params={"action": action, **(params or {})}, timeout=self.timeout)
            else:
                r = self.session.post(self.url, params={"action": action}, json=body, timeout=self.timeout)
            if r.status_code >= 400:
                logger.warning("storage_api %s HTTP %s", action, r.status_code)
            payload = r.json()
        except (requests.RequestException, ValueError) as e:
            logger.error("storage_api %s exception: %s", action, e)
            return {"success": False, "error": str(e)}
        if not isinstance(payload, dict) or payload.get("success") is not True:
            logger.warning("storage_api %s failed: %s", action, payload.get("error") if isinstance(payload, dict) else payload)
            return payload if isinstance(payload, dict) else {"success": False, "error": "bad_response"}
        return payload

    def get(self, key):
        return self._call("GET", "get", params={"key": key})

    def set(self, key, value):
        return self._call("POST", "set", body={"key": key, "value": value})

    def get_all(self):
        return self._call("GET", "get_all")

    def set_batch(self, items):
        return self._call("POST", "set_batch", body={"items": items})

    def list_keys(self):
        return self._call("GET", "list")


class LocalMirror:
    """JSON file standing in for localStorage."""

    def __init__(self, path):
        self.path = path

    def _load(self):
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
            return data if isinstance(data, dict) else {}
        except (OSError, ValueError):
            return {}

    def _save(self, data):
        folder = os.path.dirname(self.path)
        if folder:
            os.makedirs(folder, exist_ok=True)
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(data, fh, ensure_ascii=False)
        os.replace(tmp, self.path)

    def read(self, key):
        return self._load().get(key)

    def write(self, key, value):
        data = self._load()
        data[key] = value
        self._save(data)

    def keys(self):
        return list(self._load())


class SyncAgent:
    def __init__(self, client: StorageClient, mirror: LocalMirror, keys=None):
        self.client = client
        self.mirror = mirror
        self.keys = list(keys or SYNC_KEYS)

    def is_synced_key(self, key) -> bool:
        return key in self.keys or (isinstance(key, str) and is_prefix_key(key))

    def pull_initial(self):
        pulled = []
        for k in self.keys:
            r = self.client.get(k)
            if r.get("success") and r.get("data") is not None:
                self.mirror.write(k, r["data"])
                pulled.append(k)
        logger.info("Pulled %d keys from server", len(pulled))
        return pulled

    def push(self, key):
        if not self.is_synced_key(key):
            return None
        value = self.mirror.read(key)
        if value is None:
            # server rejects null values
            return None
        return self.client.set(key, value)

    def write(self, key, value):
        """Local write followed by an immediate push, like a same-tab setItem."""
        self.mirror.write(key, value)
        return self.push(key)

    def reconcile(self):
        pushed = []
        local_prefix_keys = [k for k in self.mirror.keys() if is_prefix_key(k)]
        for k in self.keys + local_prefix_keys:
            r = self.push(k)
            if r and r.get("success"):
                pushed.append(k)
        return pushed

    def run(self, interval=5.0, iterations=None):
        """Pull once, then reconcile every `interval` seconds; `iterations=None` loops forever."""
        self.pull_initial()
        done = 0
        while iterations is None or done < iterations:
            self.reconcile()
            done += 1
            if iterations is None or done < iterations:
                time.sleep(interval)
        return done


if __name__ == "__main__":
    import argparse
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper(),
                        format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    parser = argparse.ArgumentParser(description="Mirror a local JSON store to the casino storage API")
    parser.add_argument("base_url", help="Server root, e.g. http://localhost:8080")
    parser.add_argument("--mirror", default="local_storage.json", help="Local JSON mirror file")
    parser.add_argument("--interval", type=float, default=5.0)
    parser.add_argument("--once", action="store_true", help="Pull and reconcile a single time")
    args = parser.parse_args()

    agent = SyncAgent(StorageClient(args.base_url), LocalMirror(args.mirror))
    try:
        agent.run(args.interval, iterations=1 if args.once else None)
    except KeyboardInterrupt:
        logger.info("Sync stopped")
