"""
Key/value JSON blob storage behind the /storage_api.php endpoint.

Every backend stores whole JSON documents keyed by string. Keys are gated by an
allowlist of exact names plus a few prefixes; there is no eviction, no
cross-key transaction and no conflict detection (last write wins).
"""
import os, re, json, logging, tempfile, threading
from datetime import datetime
from sqlalchemy import text

logger = logging.getLogger(__name__)

ALLOWED_KEYS = [
    "demo_users",
    "demo_wallets",
    "demo_transactions",
    "withdrawRequests",
    "depositRequests",
    "vip_requests",
    "transfer_requests",
    "notifications",
    "adminNotifications",
]
ALLOWED_PREFIXES = ["balance:", "sec_code:"]


class KeyNotAllowed(ValueError):
    pass


class StorageWriteError(RuntimeError):
    pass


def is_allowed_key(key) -> bool:
    if not key or not isinstance(key, str):
        return False
    if key in ALLOWED_KEYS:
        return True
    return any(key.startswith(p) for p in ALLOWED_PREFIXES)


def is_prefix_key(key: str) -> bool:
    return any(key.startswith(p) for p in ALLOWED_PREFIXES)


def key_to_filename(key: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]", "_", key) + ".json"


def _require_allowed(key):
    if not is_allowed_key(key):
        raise KeyNotAllowed("Key not allowed")


def _atomic_write(path, payload):
    """Write through a uniquely named temp file beside path, then rename it over path."""
    tmp = None
    try:
        with tempfile.NamedTemporaryFile("w", encoding="utf-8", dir=os.path.dirname(path),
                                         prefix=".", suffix=".tmp", delete=False) as fh:
            tmp = fh.name
            fh.write(payload)
        os.replace(tmp, path)
    except OSError:
        if tmp and os.path.exists(tmp):
            os.remove(tmp)
        raise


class KeyValueStore:
    """Common surface of every backend."""
    name = "base"

    def get(self, key):
        raise NotImplementedError

    def set(self, key, value):
        raise NotImplementedError

    def get_all(self) -> dict:
        raise NotImplementedError

    def list_keys(self) -> list:
        raise NotImplementedError

    def set_batch(self, items: dict) -> list:
        written = []
        for key, value in items.items():
            if not is_allowed_key(key):
                logger.debug("set_batch skipping disallowed key %r", key)
                continue
            self.set(key, value)
            written.append(key)
        return written

    def check_writable(self) -> bool:
        return True

    def _ordered(self, data: dict) -> dict:
        # exact keys first, then prefix keys in storage order
        out = {k: data[k] for k in ALLOWED_KEYS if k in data}
        for k, v in data.items():
            if is_prefix_key(k):
                out[k] = v
        return out


class FileKeyStore(KeyValueStore):
    """One JSON file per key under <root>/keys."""
    name = "file"

    def __init__(self, root):
        self.keys_dir = os.path.join(root, "keys")
        os.makedirs(self.keys_dir, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, key):
        return os.path.join(self.keys_dir, key_to_filename(key))

    def _read_raw(self, path):
        try:
            with open(path, "r", encoding="utf-8") as fh:
                return fh.read()
        except FileNotFoundError:
            return None

    def _write_raw(self, path, raw):
        try:
            _atomic_write(path, raw)
        except OSError as e:
            raise StorageWriteError(f"Failed to write {os.path.basename(path)}: {e}") from e

    def get(self, key):
        _require_allowed(key)
        raw = self._read_raw(self._path(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            # keep undecodable payloads reachable instead of dropping them
            return {"raw": raw}

    def set(self, key, value):
        _require_allowed(key)
        self._write_raw(self._path(key), json.dumps(value, ensure_ascii=False))

    def _files(self):
        try:
            return sorted(f for f in os.listdir(self.keys_dir) if f.endswith(".json"))
        except FileNotFoundError:
            return []

    def get_all(self):
        out = {}
        for k in ALLOWED_KEYS:
            raw = self._read_raw(self._path(k))
            if raw is not None:
                out[k] = _decode_or_raw(raw)
        # prefix keys can only be recovered by their sanitized file name
        sanitized_prefixes = [key_to_filename(p)[:-5] for p in ALLOWED_PREFIXES]
        for f in self._files():
            name = f[:-5]
            if any(name.startswith(p) for p in sanitized_prefixes):
                out[name] = _decode_or_raw(self._read_raw(os.path.join(self.keys_dir, f)))
        return out

    def list_keys(self):
        return [f[:-5] for f in self._files()]

    def check_writable(self):
        probe = os.path.join(self.keys_dir, ".write_probe")
        with self._lock:
            self._write_raw(probe, "{}")
            os.remove(probe)
        return True


def _decode_or_raw(raw):
    try:
        return json.loads(raw)
    except ValueError:
        return raw


class DocumentStore(KeyValueStore):
    """The whole map kept in a single storage.json document.

    Writers hold a per-instance lock across the whole read-modify-write.
    """
    name = "document"

    def __init__(self, root):
        keys_dir = os.path.join(root, "keys")
        os.makedirs(keys_dir, exist_ok=True)
        self.path = os.path.join(keys_dir, "storage.json")
        self._lock = threading.Lock()
        if not os.path.exists(self.path):
            self._write({})

    def _read(self) -> dict:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
            return data if isinstance(data, dict) else {}
        except (OSError, ValueError):
            return {}

    def _write(self, data: dict):
        try:
            _atomic_write(self.path, json.dumps(data, indent=2, ensure_ascii=False))
        except OSError as e:
            raise StorageWriteError(f"Failed to write storage document: {e}") from e

    def get(self, key):
        _require_allowed(key)
        return self._read().get(key)

    def set(self, key, value):
        _require_allowed(key)
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def set_batch(self, items):
        written = []
        with self._lock:
            data = self._read()
            for key, value in items.items():
                if not is_allowed_key(key):
                    logger.debug("set_batch skipping disallowed key %r", key)
                    continue
                data[key] = value
                written.append(key)
            self._write(data)
        return written

    def get_all(self):
        return self._ordered(self._read())

    def list_keys(self):
        return [k for k in self._read() if is_allowed_key(k)]

    def check_writable(self):
        with self._lock:
            self._write(self._read())
        return True


class MemoryStore(KeyValueStore):
    """Process-local map; contents vanish on restart."""
    name = "memory"

    def __init__(self):
        self.data = {}

    def get(self, key):
        _require_allowed(key)
        return self.data.get(key)

    def set(self, key, value):
        _require_allowed(key)
        self.data[key] = value

    def get_all(self):
        return self._ordered(self.data)

    def list_keys(self):
        return [k for k in self.data if is_allowed_key(k)]


class SqlStore(KeyValueStore):
    """Rows in the kv_entries table, one JSON document per key."""
    name = "sql"

    def __init__(self, session_factory, model):
        self.session_factory = session_factory
        self.model = model

    def get(self, key):
        _require_allowed(key)
        s = self.session_factory()
        try:
            row = s.get(self.model, key)
            return _decode_or_raw(row.value) if row else None
        finally:
            s.close()

    def set(self, key, value):
        self.set_batch({key: value}, strict=True)

    def set_batch(self, items, strict=False):
        s = self.session_factory()
        written = []
        try:
            for key, value in items.items():
                if not is_allowed_key(key):
                    if strict:
                        raise KeyNotAllowed("Key not allowed")
                    logger.debug("set_batch skipping disallowed key %r", key)
                    continue
                raw = json.dumps(value, ensure_ascii=False)
                row = s.get(self.model, key)
                if row:
                    row.value = raw
                    row.updated_at = datetime.utcnow()
                else:
                    s.add(self.model(key=key, value=raw))
                written.append(key)
            s.commit()
            return written
        except KeyNotAllowed:
            s.rollback()
            raise
        except Exception as e:
            s.rollback()
            raise StorageWriteError(f"Failed to write: {e}") from e
        finally:
            s.close()

    def _all(self):
        s = self.session_factory()
        try:
            rows = s.query(self.model).order_by(self.model.key).all()
            return {r.key: _decode_or_raw(r.value) for r in rows}
        finally:
            s.close()

    def get_all(self):
        return self._ordered(self._all())

    def list_keys(self):
        return [k for k in self._all() if is_allowed_key(k)]

    def check_writable(self):
        s = self.session_factory()
        try:
            s.execute(text("SELECT 1"))
            return True
        finally:
            s.close()


BACKENDS = ("file", "document", "memory", "sql")


def create_store(backend: str, root=None, session_factory=None, kv_model=None) -> KeyValueStore:
    backend = (backend or "file").lower()
    if backend == "file":
        return FileKeyStore(root)
    if backend == "document":
        return DocumentStore(root)
    if backend == "memory":
        return MemoryStore()
    if backend == "sql":
        if session_factory is None or kv_model is None:
            raise ValueError("sql storage backend needs a session factory and a kv model")
        return SqlStore(session_factory, kv_model)
    raise ValueError(f"Unknown storage backend: {backend}")
