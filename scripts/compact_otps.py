#!/usr/bin/env python3
"""Delete one-time code records that expired or were used long ago.

Usage:
    python scripts/compact_otps.py --older-than-days 7

Verification never depends on old records, so this is safe to run at any
time, e.g. from a nightly cron job.
"""
from __future__ import annotations

import argparse
import sys
from datetime import timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main():
    parser = argparse.ArgumentParser(description="Compact the otp_codes table")
    parser.add_argument(
        "--older-than-days",
        type=float,
        default=7.0,
        help="Only remove records whose expiry or use is older than this (default 7)",
    )
    args = parser.parse_args()

    from uniportal.config import get_settings
    from uniportal.service.email import EmailService
    from uniportal.service.otp import OtpLedger
    from uniportal.service.runtime import build_store

    try:
        settings = get_settings()
        store = build_store(settings)
        ledger = OtpLedger(store, EmailService(), settings.session_secret)
        removed = ledger.compact(timedelta(days=args.older_than_days))
        print(f"Removed {removed} one-time code record(s)")
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
