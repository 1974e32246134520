import os
import sys
import signal
import logging
import subprocess
from typing import Optional
from edge.config.settings import Settings, load_settings

logger = logging.getLogger("edge.renewal")


def configure_renewal_logging():
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def is_root() -> bool:
    return os.geteuid() == 0


def has_privilege() -> bool:
    """Root, or passwordless sudo available to this user."""
    if is_root():
        return True
    try:
        result = subprocess.run(["sudo", "-n", "true"], capture_output=True)
    except FileNotFoundError:
        return False
    return result.returncode == 0


def read_pid(pid_file: str) -> Optional[int]:
    try:
        with open(pid_file, encoding="utf-8") as fh:
            return int(fh.read().strip())
    except (OSError, ValueError):
        return None


def proxy_pid(pid_file: str) -> Optional[int]:
    """PID of the running edge router, or None when it is not running."""
    pid = read_pid(pid_file)
    if pid is None:
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return None
    except PermissionError:
        # exists, owned by another user
        return pid
    return pid


def renew_certificates(webroot: str) -> bool:
    command = ["certbot", "renew", "--webroot", "-w", webroot, "--quiet"]
    if not is_root():
        command = ["sudo"] + command
    try:
        result = subprocess.run(command)
    except FileNotFoundError as e:
        logger.error(f"ERROR: {e}")
        return False
    return result.returncode == 0


def reload_proxy(pid: int) -> bool:
    try:
        os.kill(pid, signal.SIGHUP)
        return True
    except PermissionError:
        result = subprocess.run(["sudo", "kill", "-HUP", str(pid)])
        return result.returncode == 0
    except ProcessLookupError:
        return False


def run(settings: Settings) -> int:
    if not has_privilege():
        logger.error("ERROR: Certificate renewal needs root or passwordless sudo")
        return 1

    pid = proxy_pid(settings.pid_file)
    if pid is None:
        logger.error(f"ERROR: Edge router is not running (pid file {settings.pid_file})")
        return 1

    logger.info("Starting certificate renewal process")
    if not renew_certificates(settings.acme_webroot):
        logger.error("ERROR: Certificate renewal failed")
        return 1
    logger.info("Certificate renewal successful")

    if not reload_proxy(pid):
        logger.error("ERROR: Failed to reload edge router configuration")
        return 1
    logger.info("Edge router configuration reloaded successfully")

    logger.info("Certificate renewal process completed successfully")
    return 0


def main():
    configure_renewal_logging()
    sys.exit(run(load_settings()))


if __name__ == "__main__":
    main()
