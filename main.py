"""Example entry point: one update check, optionally followed by a download."""

import json
import logging
import os
import sys

from trust import TrustConfig
from update_client import CHUNK, DEFAULT_USER_AGENT, MINIMUM_IMAGE_SIZE, new_updater
from update_errors import UpdateError

try:  # CPython 3.11
    import tomllib  # type: ignore
except Exception:  # earlier CPython
    tomllib = None

log = logging.getLogger("update_client.main")


def _splitext(p: str):
    i = p.rfind(".")
    return (p[:i], p[i:]) if i != -1 else (p, "")


def _basename(p: str):
    j = p.rfind("/")
    return p[j + 1:] if j != -1 else p


def load_config(config_path: str = "update_config.json"):
    """Load configuration from JSON, YAML or TOML based on extension."""
    try:
        with open(config_path, "r") as f:
            text = f.read()
    except Exception as exc:
        raise RuntimeError("Config file not found: {}".format(config_path)) from exc
    _, ext = _splitext(config_path)
    ext = ext.lower()
    if ext in (".yaml", ".yml"):
        try:
            import yaml
        except Exception as exc:  # pragma: no cover - missing dependency
            raise RuntimeError("PyYAML is required for YAML config files") from exc
        try:
            cfg = yaml.safe_load(text) or {}
        except yaml.YAMLError as exc:
            raise ValueError("Invalid YAML in {}: {}".format(_basename(config_path), exc)) from exc
    elif ext == ".toml":
        if tomllib is None:
            raise RuntimeError("TOML config requires CPython 3.11 or tomllib. Use JSON instead.")
        cfg = tomllib.loads(text)
    else:
        cfg = json.loads(text)
    if not isinstance(cfg, dict):
        raise ValueError("{} must hold a mapping of settings".format(_basename(config_path)))
    server = str(cfg.get("server", "")).strip()
    if not server or "YOUR_UPDATE_SERVER" in server.upper():
        raise ValueError(
            "{} must define a non placeholder 'server' URL".format(_basename(config_path))
        )
    return cfg


def trust_config_from(cfg: dict) -> TrustConfig:
    return TrustConfig(
        cert_file=str(cfg.get("cert_file") or ""),
        cert_key=str(cfg.get("cert_key") or ""),
        server_cert=str(cfg.get("server_cert") or ""),
    )


def timeout_from(cfg: dict):
    """``(connect, read)`` tuple, a single value, or ``None``."""
    connect_timeout = cfg.get("connect_timeout_sec")
    read_timeout = cfg.get("http_timeout_sec", 10)
    if connect_timeout is not None and read_timeout is not None:
        return (connect_timeout, read_timeout)
    if connect_timeout is not None:
        return connect_timeout
    return read_timeout


def save_image(result, dest: str, chunk: int = CHUNK) -> int:
    """Stream *result* into *dest* and close it.  Returns bytes written.

    The image lands in ``dest + ".tmp"`` first and is renamed into place only
    when the declared length was received in full.
    """
    tmp = dest + ".tmp"
    written = 0
    try:
        with open(tmp, "wb") as f:
            for b in result.iter_chunks(chunk):
                f.write(b)
                written += len(b)
            f.flush()
            if hasattr(os, "fsync"):
                os.fsync(f.fileno())
    except Exception:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise
    finally:
        result.close()
    if written != result.length:
        os.remove(tmp)
        raise UpdateError("Image size mismatch: got {} of {} bytes".format(written, result.length))
    os.replace(tmp, dest)
    return written


def run(cfg: dict) -> int:
    updater = new_updater(
        trust_config_from(cfg),
        log=logging.getLogger("update_client"),
        timeout=timeout_from(cfg),
        min_image_size=int(cfg.get("min_image_size", MINIMUM_IMAGE_SIZE)),
        user_agent=cfg.get("user_agent", DEFAULT_USER_AGENT),
    )
    with updater:
        update = updater.get_scheduled_update(cfg["server"])
        if update is None:
            log.info("No update available")
            return 0
        log.info("Update %s available: image %s (%s)", update.id, update.image.id, update.image.uri)
        image_path = cfg.get("image_path")
        if not image_path:
            return 0
        result = updater.fetch_update(update.image.uri)
        written = save_image(result, image_path, int(cfg.get("chunk", CHUNK)))
        log.info("Stored %d bytes in %s", written, image_path)
    return 0


def main(config_path: str = "update_config.json") -> int:
    try:
        cfg = load_config(config_path)
    except (RuntimeError, ValueError) as exc:
        logging.basicConfig(level=logging.INFO)
        log.error("Invalid configuration: %s", exc)
        return 1
    logging.basicConfig(
        level=logging.DEBUG if cfg.get("debug") else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        return run(cfg)
    except UpdateError as exc:
        log.error("Update check failed: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main(*sys.argv[1:2]))
