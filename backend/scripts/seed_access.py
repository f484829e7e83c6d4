#!/usr/bin/env python
"""Idempotent seed script for access rights & bootstrap roles.

Usage:
    python backend/scripts/seed_access.py               # sync normally
    python backend/scripts/seed_access.py --show-roles  # print role -> right counts after syncing
    python backend/scripts/seed_access.py --dry-run     # run logic then rollback (no DB changes)
    python backend/scripts/seed_access.py --export-json roles.json
    python backend/scripts/seed_access.py --fail-if-changed <sha256>
"""
from __future__ import annotations
import argparse
import json
import os
import sys
import textwrap

from sqlalchemy import select

# Allow running from repo root
sys.path.append(os.path.abspath('backend'))

from backoffice import create_app, get_db  # noqa: E402
from backoffice.models.access import Role  # noqa: E402
from backoffice.services.seeding import SyncReport, sync_access  # noqa: E402

EXIT_DECLARATION_FAILED = 2
EXIT_CHECKSUM_MISMATCH = 4


def summarize_roles(session):
    rows = []
    for role in session.execute(select(Role).order_by(Role.name.asc())).scalars().all():
        keys = sorted(g.access_right.operation_key for g in role.grants)
        rows.append((role.name, len(keys), keys[:6]))
    return rows


def print_role_summary(session):
    rows = summarize_roles(session)
    if not rows:
        print("[INFO] No roles present.")
        return
    name_w = max(len(r[0]) for r in rows)
    print(f"{'Role'.ljust(name_w)} | Count | Sample (up to 6)")
    print('-' * (name_w + 40))
    for name, cnt, sample in rows:
        print(f"{name.ljust(name_w)} | {str(cnt).rjust(5)} | {', '.join(sample)}")


def export_payload(report: SyncReport) -> dict:
    return {
        'roles': report.role_rights,
        'meta': {
            'grants_total': sum(len(v) for v in report.role_rights.values()),
            'distinct_rights': len({k for keys in report.role_rights.values() for k in keys}),
            'roles_checksum_sha256': report.checksum,
            'role_names_sorted': sorted(report.role_rights),
            'dry_run': report.dry_run,
        },
    }


def parse_args(argv=None):
    p = argparse.ArgumentParser(
        description="Sync declared access rights and bootstrap role grants",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""Examples:\n  sync: seed_access.py\n  dry run: seed_access.py --dry-run\n  show roles: seed_access.py --show-roles\n""")
    )
    p.add_argument('--show-roles', action='store_true', help='Print role right counts after syncing')
    p.add_argument('--dry-run', action='store_true', help='Rollback after operations (no commit)')
    p.add_argument('--export-json', nargs='?', const='-', metavar='FILE', help='Export bootstrap role->rights JSON (to FILE or stdout if omitted)')
    p.add_argument('--fail-if-changed', metavar='CHECKSUM', help='Exit 4 if computed roles checksum differs from provided value')
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    app = create_app()
    with app.app_context():
        report = sync_access(dry_run=args.dry_run)
        for key, messages in sorted(report.failures.items()):
            print(f"[WARN] Declaration {key} skipped: {'; '.join(messages)}")
        for name, err in sorted(report.role_failures.items()):
            print(f"[WARN] Grants for role {name} rolled back: {err}")
        prefix = '[DRY-RUN] (rolled back)' if args.dry_run else '[DONE]'
        print(f"{prefix} {report.summary()}")
        if args.show_roles:
            print('\nRole Right Summary:')
            print_role_summary(get_db())
        if args.export_json is not None:
            payload = export_payload(report)
            if args.export_json == '-':
                print(json.dumps(payload, indent=2, sort_keys=True))
            else:
                with open(args.export_json, 'w', encoding='utf-8') as f:
                    json.dump(payload, f, indent=2, sort_keys=True)
                print(f"[INFO] Exported JSON to {args.export_json}")
        if args.fail_if_changed:
            if report.checksum != args.fail_if_changed:
                print(f"[CHECKSUM] MISMATCH: expected {args.fail_if_changed} got {report.checksum}")
                return EXIT_CHECKSUM_MISMATCH
            print(f"[CHECKSUM] OK: {report.checksum}")
        if not report.ok:
            return EXIT_DECLARATION_FAILED
    return 0


if __name__ == '__main__':
    sys.exit(main())
