import logging
from flask import Blueprint, request, current_app
from storage import is_allowed_key, KeyNotAllowed, StorageWriteError

logger = logging.getLogger(__name__)

storage_api = Blueprint("storage_api", __name__)

def get_store():
    return current_app.extensions["kv_store"]

def ok(data):
    return {"success": True, "data": data}

def fail(message, code=400):
    return {"success": False, "error": message}, code

@storage_api.route("/storage_api.php", methods=["GET", "POST", "OPTIONS"])
@storage_api.route("/api/storage", methods=["GET", "POST", "OPTIONS"])
def storage_endpoint():
    """
    ?action=get|set|get_all|set_batch|list
    GET takes key from the query string; POST takes key/value/items from the JSON body.
    """
    if request.method == "OPTIONS":
        return {"success": True}

    if request.method == "POST":
        data = request.get_json(force=True, silent=True)
        if request.get_data() and data is None:
            return fail("Invalid JSON")
        data = data if isinstance(data, dict) else {}
    else:
        data = request.args.to_dict()

    action = request.args.get("action") or data.get("action") or ""
    key = request.args.get("key") or data.get("key")
    store = get_store()

    try:
        if action == "get":
            if not is_allowed_key(key): return fail("Key not allowed", 403)
            return ok(store.get(key))

        if action == "set":
            if not is_allowed_key(key): return fail("Key not allowed", 403)
            value = data.get("value")
            if value is None: return fail("Missing value")
            store.set(key, value)
            logger.info("storage set %s via %s", key, store.name)
            return ok(True)

        if action == "get_all":
            return ok(store.get_all())

        if action == "set_batch":
            items = data.get("items")
            if not isinstance(items, dict): return fail("items must be an object map")
            written = store.set_batch(items)
            logger.info("storage set_batch wrote %d of %d keys", len(written), len(items))
            return ok(True)

        if action == "list":
            return ok(store.list_keys())

        return fail("Unknown action", 404)
    except KeyNotAllowed:
        return fail("Key not allowed", 403)
    except StorageWriteError:
        logger.exception("storage write failed for action %s", action)
        return fail("Failed to write", 500)
    except Exception as e:
        logger.exception("storage action %s failed", action)
        return fail(str(e), 500)
