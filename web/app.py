from flask import Flask, jsonify, request
import logging
import os
from typing import Any, Dict

from filtersync.background_guard import acquire_background_lock
from filtersync.config_store import get_config_store
from filtersync.errors import DuplicateError, NotFoundError, public_error_message
from filtersync.logutil import log_exception_throttled
from filtersync.models import (
    EVENT_AFTER_UPDATE,
    STATUS_CHANGED_ENABLED,
    STATUS_CHANGED_URL,
    FilterConf,
    FilterDescriptor,
)
from filtersync.storage import get_filter_storage


logger = logging.getLogger(__name__)

app = Flask(__name__)

# Global request body limit (bytes). Filter API bodies are tiny.
try:
    app.config.setdefault(
        'MAX_CONTENT_LENGTH',
        int((os.environ.get('MAX_CONTENT_LENGTH') or str(64 * 1024)).strip()),
    )
except ValueError:
    app.config.setdefault('MAX_CONTENT_LENGTH', 64 * 1024)

storage = get_filter_storage()


def _save_config() -> None:
    try:
        get_config_store().save(storage.write_config())
    except Exception:
        log_exception_throttled(
            logger,
            "app.save_config",
            interval_seconds=60.0,
            message="Failed to save filter configuration",
        )


def _on_filters_event(event: int) -> None:
    # Persist refreshed rule counts and caching tokens after each pass.
    if event == EVENT_AFTER_UPDATE:
        _save_config()


storage.add_observer(_on_filters_event)

_disable_background = (os.environ.get('DISABLE_BACKGROUND') or '').strip() == '1'

# In multi-worker servers, ensure only one process runs the update loops.
if not _disable_background:
    try:
        if not acquire_background_lock():
            _disable_background = True
    except Exception:
        logger.exception("Background lock check failed; starting filter updates anyway")

try:
    if _disable_background:
        storage.load_cached()
    else:
        storage.start()
except OSError:
    logger.exception("Failed to load cached filters from %s", storage.filter_dir)


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _error(e: Exception, status: int):
    return jsonify({"ok": False, "error": public_error_message(e)}), status


def _error_status(e: Exception) -> int:
    if isinstance(e, DuplicateError):
        return 409
    if isinstance(e, NotFoundError):
        return 404
    return 400


def _remove_cache_file(path: str) -> None:
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError:
        logger.exception("Failed to remove filter file %s", path)


@app.route('/health', methods=['GET'])
def health():
    return jsonify({"ok": True}), 200


@app.route('/filters', methods=['GET'])
def filters_status():
    conf = storage.write_config()
    return jsonify(
        {
            "interval_hours": int(conf.update_interval_hours),
            "filters": [f.to_dict() for f in storage.list_filters()],
        }
    )


@app.route('/filters/add', methods=['POST'])
def filters_add():
    body = _json_body()
    name = str(body.get('name') or '').strip()
    url = str(body.get('url') or '').strip()
    if not url:
        return _error(ValueError("url is required"), 400)

    try:
        flt = storage.add(FilterDescriptor(url=url, name=name))
    except Exception as e:
        logger.info("Filter add failed (url=%s): %s", url, e)
        return _error(e, _error_status(e))

    _save_config()
    return jsonify({"ok": True, "filter": flt.to_dict()}), 200


@app.route('/filters/remove', methods=['POST'])
def filters_remove():
    url = str(_json_body().get('url') or '').strip()
    flt = storage.delete(url)
    if flt is None:
        return _error(NotFoundError(f"filter {url} not found"), 404)

    _remove_cache_file(flt.path)
    _save_config()
    return jsonify({"ok": True}), 200


@app.route('/filters/set_url', methods=['POST'])
def filters_set_url():
    body = _json_body()
    url = str(body.get('url') or '').strip()
    data = body.get('data') if isinstance(body.get('data'), dict) else {}
    current = next((f for f in storage.list_filters() if f.url == url), None)
    if current is None:
        return _error(NotFoundError(f"filter {url} not found"), 404)

    # Omitted fields keep their current values.
    new_url = str(data.get('url') or url).strip()
    name = str(data.get('name') or '').strip() if 'name' in data else current.name
    enabled = data.get('enabled', current.enabled)
    if not isinstance(enabled, bool):
        return _error(ValueError("enabled must be true or false"), 400)

    try:
        st, prev = storage.modify(url, enabled, name, new_url)
    except Exception as e:
        logger.info("Filter modify failed (url=%s): %s", url, e)
        return _error(e, _error_status(e))

    if st & STATUS_CHANGED_URL:
        # The new URL got a new id; the old cache file is no longer used.
        _remove_cache_file(prev.path)
    _save_config()
    return jsonify(
        {
            "ok": True,
            "changed_enabled": bool(st & STATUS_CHANGED_ENABLED),
            "changed_url": bool(st & STATUS_CHANGED_URL),
            "previous": prev.to_dict(),
        }
    ), 200


@app.route('/filters/refresh', methods=['POST'])
def filters_refresh():
    if not storage.scheduler.running:
        return jsonify({"ok": False, "error": "Filter updates are not running in this process."}), 503
    # Blocks while two update passes are already queued.
    requested = storage.refresh()
    return jsonify({"ok": bool(requested)}), 200


@app.route('/filters/config', methods=['POST'])
def filters_config():
    body = _json_body()
    try:
        hours = int(body.get('interval_hours'))
    except (TypeError, ValueError):
        return _error(ValueError("interval_hours must be an integer"), 400)
    if hours < 0:
        return _error(ValueError("interval_hours must be >= 0"), 400)

    storage.set_config(FilterConf(filter_dir=storage.filter_dir, update_interval_hours=hours))
    _save_config()
    return jsonify({"ok": True, "interval_hours": hours}), 200
