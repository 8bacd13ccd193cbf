import hashlib
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the database columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def sha256_hex(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode()
    return hashlib.sha256(data).hexdigest()


def print_banner(service_name: str, version: str = "1.0.0"):
    """
    Print the startup banner.

    Args:
        service_name: Name of the service starting up
        version: Version number of the service (default: "1.0.0")
    """
    print("=" * 80)
    print("  WP-AUTOHEALER - WordPress Incident Remediation Engine")
    print("=" * 80)
    print(f"  Service:        {service_name}")
    print(f"  Version:        {version}")
    print(f"  Started:        {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("-" * 80)
    print("  Phases:         DISCOVERY > BASELINE > BACKUP > OBSERVABILITY > FIX > VERIFY")
    print("=" * 80)
    print()
