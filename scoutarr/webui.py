import argparse
import base64
import hashlib
import hmac
import logging
import os
import secrets
import threading
from pathlib import Path
from typing import Any

import requests
import yaml
from flask import Flask, jsonify, request

from .arr import ArrRequestError
from .config import SERVICE_TYPES, RuntimeConfig, load_config
from .logging_utils import config_secrets, register_secrets, setup_logging
from .scheduler import Scheduler
from .state import StateStore


class _QuietAccessFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        noisy_paths = [
            '"GET /api/status ',
            '"GET /favicon.ico ',
        ]
        return not any(path in msg for path in noisy_paths)


def _targets_view(config: RuntimeConfig, store: StateStore) -> list[dict[str, Any]]:
    rows = []
    for target in config.all_targets():
        rows.append(
            {
                "service_type": target.service_type,
                "target_id": target.target_id,
                "name": target.name,
                "enabled": target.enabled,
                "count": target.count,
                "tag_name": target.tag_name,
                "unattended": config.effective_unattended(target),
                "schedule": target.schedule,
                "schedule_enabled": target.schedule_enabled,
                "url": target.arr.url,
                "api_key_set": bool(
                    store.has_arr_api_key(target.service_type, target.target_id) or target.arr.api_key
                ),
            }
        )
    return rows


def _hash_password(password: str) -> str:
    pw = str(password or "").encode("utf-8")
    salt = secrets.token_bytes(16)
    iterations = 200_000
    dk = hashlib.pbkdf2_hmac("sha256", pw, salt, iterations, dklen=32)
    return "pbkdf2_sha256$%d$%s$%s" % (
        iterations,
        base64.urlsafe_b64encode(salt).decode("ascii").rstrip("="),
        base64.urlsafe_b64encode(dk).decode("ascii").rstrip("="),
    )


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, it_s, salt_s, dk_s = str(password_hash).split("$", 3)
        if algo != "pbkdf2_sha256":
            return False
        iterations = int(it_s)
        salt = base64.urlsafe_b64decode(salt_s + "=" * (-len(salt_s) % 4))
        expected = base64.urlsafe_b64decode(dk_s + "=" * (-len(dk_s) % 4))
    except ValueError:
        return False
    got = hashlib.pbkdf2_hmac("sha256", str(password or "").encode("utf-8"), salt, iterations, dklen=len(expected))
    return hmac.compare_digest(got, expected)


def _payload_target(payload: dict[str, Any]) -> tuple[str, str]:
    service_type = str(payload.get("service_type") or payload.get("app") or "").strip().lower()
    target_id = str(payload.get("target_id") or payload.get("instance_id") or "").strip()
    return service_type, target_id


def create_app(config_path: str, start_scheduler: bool = True) -> Flask:
    config_path = str(Path(config_path).resolve())
    config = load_config(config_path)
    setup_logging(config.app.log_level, secrets=config_secrets(config))
    logger = logging.getLogger("scoutarr.webui")
    wz = logging.getLogger("werkzeug")
    wz.addFilter(_QuietAccessFilter())
    store = StateStore(config.app.db_path)
    scheduler = Scheduler(config=config, store=store, logger=logging.getLogger("scoutarr.scheduler"))
    config_lock = threading.Lock()

    app = Flask(__name__)
    app.config["SCOUTARR_SCHEDULER"] = scheduler

    password_hash = store.get_webui_password_hash()
    env_pw = str(os.getenv("SCOUTARR_WEBUI_PASSWORD", "") or "").strip()
    if not password_hash and env_pw:
        password_hash = _hash_password(env_pw)
        store.set_webui_password_hash(password_hash)

    def _json_unauthorized(msg: str = "Unauthorized") -> Any:
        return jsonify({"error": msg}), 401

    @app.before_request
    def _auth() -> Any:
        if not request.path.startswith("/api/"):
            return None
        if request.path in ("/api/auth/status", "/api/auth/bootstrap"):
            return None
        if not password_hash:
            return _json_unauthorized("Web UI password not set")

        auth = request.headers.get("Authorization", "")
        if auth.startswith("Basic "):
            try:
                decoded = base64.b64decode(auth.split(" ", 1)[1]).decode("utf-8", "ignore")
                pw = decoded.split(":", 1)[1] if ":" in decoded else ""
            except ValueError:
                pw = ""
        else:
            pw = str(request.headers.get("X-Scoutarr-Password", "") or "")

        if not _verify_password(pw, password_hash):
            return _json_unauthorized()
        return None

    @app.get("/api/auth/status")
    def auth_status() -> Any:
        return jsonify({"password_set": bool(password_hash)})

    @app.post("/api/auth/bootstrap")
    def auth_bootstrap() -> Any:
        nonlocal password_hash
        if password_hash:
            return jsonify({"error": "Password already set"}), 409
        payload = request.get_json(silent=True) or {}
        pw = str(payload.get("password") or "").strip()
        if len(pw) < 8:
            return jsonify({"error": "Password must be at least 8 characters"}), 400
        password_hash = _hash_password(pw)
        store.set_webui_password_hash(password_hash)
        return jsonify({"ok": True})

    def _get_config() -> RuntimeConfig:
        with config_lock:
            return config

    def _reload_config() -> None:
        nonlocal config
        new_config = load_config(config_path)
        # The open StateStore stays bound to the original database.
        if Path(new_config.app.db_path).resolve() != Path(config.app.db_path).resolve():
            raise ValueError("Changing app.db_path requires a restart.")
        with config_lock:
            config = new_config
        scheduler.reload(new_config)

    @app.get("/api/status")
    def status() -> Any:
        cfg = _get_config()
        payload = scheduler.status()
        payload["targets"] = _targets_view(cfg, store)
        return jsonify(payload)

    @app.get("/api/history")
    def history() -> Any:
        return jsonify({"history": [r.as_dict() for r in scheduler.history()]})

    @app.post("/api/history/clear")
    def clear_history() -> Any:
        scheduler.clear_history()
        return jsonify({"ok": True})

    @app.post("/api/run")
    def run() -> Any:
        if not scheduler.start_run_now():
            return jsonify({"error": "Run already in progress"}), 409
        return jsonify({"message": "Run started"}), 202

    @app.post("/api/run_instance")
    def run_instance() -> Any:
        payload = request.get_json(silent=True) or {}
        service_type, target_id = _payload_target(payload)
        if service_type not in SERVICE_TYPES or not _get_config().find_target(service_type, target_id):
            return jsonify({"error": "Invalid instance"}), 400
        if not scheduler.start_run_now(service_type, target_id):
            return jsonify({"error": "Run already in progress"}), 409
        return jsonify({"message": f"Instance run started: {service_type}:{target_id}"}), 202

    @app.get("/api/stats")
    def stats() -> Any:
        try:
            limit = int(request.args.get("limit", 100))
        except ValueError:
            limit = 100
        return jsonify(store.get_stats(limit=limit))

    @app.post("/api/stats/clear")
    def clear_stats() -> Any:
        store.clear_stats()
        return jsonify({"ok": True})

    @app.post("/api/reload")
    def reload_config() -> Any:
        try:
            _reload_config()
        except (OSError, ValueError, yaml.YAMLError) as exc:
            return jsonify({"error": str(exc)}), 400
        return jsonify({"ok": True, "tasks": sorted(scheduler.status()["tasks"])})

    @app.post("/api/credentials")
    def set_credentials() -> Any:
        payload = request.get_json(silent=True) or {}
        service_type, target_id = _payload_target(payload)
        api_key = str(payload.get("api_key") or "").strip()
        if service_type not in SERVICE_TYPES or not _get_config().find_target(service_type, target_id):
            return jsonify({"error": "Invalid instance"}), 400
        if not api_key:
            return jsonify({"error": "api_key is required"}), 400
        store.set_arr_api_key(service_type, target_id, api_key)
        register_secrets([api_key])
        return jsonify({"ok": True})

    @app.post("/api/credentials/clear")
    def clear_credentials() -> Any:
        payload = request.get_json(silent=True) or {}
        service_type, target_id = _payload_target(payload)
        if service_type not in SERVICE_TYPES or not target_id:
            return jsonify({"error": "Invalid instance"}), 400
        store.clear_arr_api_key(service_type, target_id)
        return jsonify({"ok": True})

    @app.post("/api/preview")
    def preview() -> Any:
        previews = scheduler.preview()
        return jsonify({"results": {key: p.as_dict() for key, p in previews.items()}})

    def _known_target(payload: dict[str, Any]) -> tuple[str, str] | None:
        service_type, target_id = _payload_target(payload)
        if service_type not in SERVICE_TYPES or not _get_config().find_target(service_type, target_id):
            return None
        return service_type, target_id

    @app.post("/api/clear_tag")
    def clear_tag() -> Any:
        known = _known_target(request.get_json(silent=True) or {})
        if known is None:
            return jsonify({"error": "Invalid instance"}), 400
        try:
            cleared = scheduler.clear_tag(*known)
        except ArrRequestError as exc:
            return jsonify({"error": str(exc)}), 502
        if cleared is None:
            return jsonify({"error": "Run already in progress"}), 409
        return jsonify({"ok": True, "cleared": cleared})

    @app.post("/api/test_connection")
    def test_connection() -> Any:
        known = _known_target(request.get_json(silent=True) or {})
        if known is None:
            return jsonify({"error": "Invalid instance"}), 400
        try:
            info = scheduler.test_connection(*known)
        except ArrRequestError as exc:
            return jsonify({"ok": False, "error": str(exc)}), 502
        return jsonify({"ok": True, **info})

    @app.post("/api/notifications/test")
    def test_notification() -> Any:
        payload = request.get_json(silent=True) or {}
        channel = str(payload.get("channel") or payload.get("method") or "").strip().lower()
        try:
            scheduler.notifier.send_test(channel)
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        except requests.exceptions.RequestException as exc:
            return jsonify({"error": f"Failed to send test notification: {exc}"}), 502
        return jsonify({"ok": True})

    @app.get("/favicon.ico")
    def favicon() -> Any:
        return ("", 204)

    if start_scheduler:
        scheduler.start()
    return app


def main() -> int:
    parser = argparse.ArgumentParser(description="Scoutarr Web API")
    parser.add_argument("--config", required=True, help="Path to YAML config file.")
    parser.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8788, help="Bind port (default: 8788)")
    parser.add_argument(
        "--allow-public",
        action="store_true",
        help="Allow binding to a non-localhost host (NOT recommended without a reverse proxy/auth).",
    )
    args = parser.parse_args()

    host = str(args.host or "").strip()
    allow_public = bool(args.allow_public) or os.getenv("SCOUTARR_ALLOW_PUBLIC_WEBUI", "0").strip().lower() in (
        "1",
        "true",
        "yes",
        "on",
    )
    if host not in ("127.0.0.1", "::1", "localhost") and not allow_public:
        raise SystemExit(
            f"Refusing to bind Web API to host={host!r} without --allow-public "
            "(to prevent accidentally exposing API endpoints)."
        )

    app = create_app(args.config)
    from waitress import serve

    serve(app, host=host, port=args.port, threads=8)
    return 0
