"""
Admin command line for the settlement ledger.

Works on a JSON snapshot of the store and goes through LedgerService for
every change, so the same invariants apply as over HTTP.

    python -m settlement.cli seed
    python -m settlement.cli book mentee-1 mentor-1 30
    python -m settlement.cli complete bk_...
    python -m settlement.cli health
"""

import argparse
import json
import sys
from decimal import Decimal
from pathlib import Path

from pydantic import BaseModel

from .config import load_config
from .errors import SettlementError
from .models import (
    AbsentParty,
    AdjustmentKind,
    ApprovePayoutRequest,
    CancelBookingRequest,
    CreateBookingRequest,
    CreditAdjustmentRequest,
    DisputeOutcome,
    MarkPayoutFailedRequest,
    MarkPayoutPaidRequest,
    NoShowRequest,
    OpenAccountRequest,
    PayoutRequest,
    RejectPayoutRequest,
    ReportDisputeRequest,
    ResolveDisputeRequest,
    RetryPayoutRequest,
    TopupRequest,
    UserRole,
)
from .service import LedgerService
from .storage import InMemoryStorage
from .syslog import get_logger, setup_logger

DEFAULT_STATE_FILE = "settlement_state.json"

logger = get_logger("settlement.cli")


def _dump(value) -> str:
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    elif isinstance(value, list):
        value = [v.model_dump(mode="json") if isinstance(v, BaseModel) else v for v in value]
    return json.dumps(value, indent=2, default=str)


def seed(service: LedgerService) -> dict:
    mentee = service.open_account(OpenAccountRequest(user_id="mentee-1", role=UserRole.MENTEE, name="Demo Mentee"))
    service.open_account(OpenAccountRequest(user_id="mentor-1", role=UserRole.MENTOR, name="Demo Mentor"))
    service.open_account(
        OpenAccountRequest(user_id="provider-1", role=UserRole.PROVIDER, name="Demo Provider", level_id="silver")
    )
    service.open_account(
        OpenAccountRequest(user_id="mentee-2", role=UserRole.MENTEE, name="Referred Mentee", provider_id="provider-1")
    )
    service.adjust_credits(
        mentee.user_id, CreditAdjustmentRequest(kind=AdjustmentKind.ADD, amount=Decimal("100"), note="Seed credits")
    )
    return {"accounts": ["mentee-1", "mentee-2", "mentor-1", "provider-1"]}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Credit settlement admin tool")
    parser.add_argument("--state", help=f"Snapshot file (default: $SETTLEMENT_STATE_FILE or {DEFAULT_STATE_FILE})")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("seed", help="Create demo accounts in a fresh snapshot")

    p = sub.add_parser("balance", help="Show balances for a user")
    p.add_argument("user_id")

    p = sub.add_parser("topup", help="Top up a mentee wallet in USD")
    p.add_argument("user_id")
    p.add_argument("amount_usd", type=Decimal)
    p.add_argument("--method", default="card")

    p = sub.add_parser("adjust", help="Admin credit adjustment")
    p.add_argument("user_id")
    p.add_argument("kind", choices=[k.value for k in AdjustmentKind])
    p.add_argument("amount", type=Decimal)
    p.add_argument("--note", default="")
    p.add_argument("--admin", default=None)

    p = sub.add_parser("book", help="Create a booking and hold its credits")
    p.add_argument("mentee_id")
    p.add_argument("mentor_id")
    p.add_argument("cost", type=Decimal)

    p = sub.add_parser("complete", help="Complete a booking and release its credits")
    p.add_argument("booking_id")

    p = sub.add_parser("cancel", help="Cancel a booking and return its credits")
    p.add_argument("booking_id")
    p.add_argument("--by", default="admin")
    p.add_argument("--reason", default="")

    p = sub.add_parser("no-show", help="Mark a booking as no-show")
    p.add_argument("booking_id")
    p.add_argument("absent", choices=[a.value for a in AbsentParty])

    p = sub.add_parser("dispute", help="Report a dispute on a completed booking")
    p.add_argument("booking_id")
    p.add_argument("reason")
    p.add_argument("--evidence", default=None)

    p = sub.add_parser("resolve", help="Resolve a disputed booking")
    p.add_argument("booking_id")
    p.add_argument("outcome", choices=[o.value for o in DisputeOutcome])
    p.add_argument("--note", default="")
    p.add_argument("--admin", default=None)

    p = sub.add_parser("request-payout", help="Request a withdrawal")
    p.add_argument("user_id")
    p.add_argument("amount", type=Decimal)
    p.add_argument("--method", default="bank_transfer")
    p.add_argument("--note", default=None)

    p = sub.add_parser("approve", help="Approve a pending payout")
    p.add_argument("payout_id")
    p.add_argument("--method", default=None)
    p.add_argument("--note", default=None)

    p = sub.add_parser("reject", help="Reject a payout")
    p.add_argument("payout_id")
    p.add_argument("reason")

    p = sub.add_parser("pay", help="Mark an approved payout as paid")
    p.add_argument("payout_id")
    p.add_argument("evidence")

    p = sub.add_parser("fail", help="Mark an approved payout as failed")
    p.add_argument("payout_id")
    p.add_argument("reason")

    p = sub.add_parser("retry", help="Resubmit a failed payout")
    p.add_argument("payout_id")
    p.add_argument("--note", default=None)

    sub.add_parser("health", help="Check conservation, orphaned references and negative balances")

    p = sub.add_parser("audit", help="Financial reports")
    p.add_argument("report", choices=["credits", "cac", "solvency", "daily"])

    p = sub.add_parser("logs", help="Show the newest system log entries")
    p.add_argument("--limit", type=int, default=20)
    return parser


def run(service: LedgerService, args: argparse.Namespace):
    command = args.command
    if command == "seed":
        return seed(service)
    if command == "balance":
        return service.balance_details(args.user_id)
    if command == "topup":
        return service.topup(args.user_id, TopupRequest(amount_usd=args.amount_usd, method=args.method))
    if command == "adjust":
        return service.adjust_credits(args.user_id, CreditAdjustmentRequest(
            kind=AdjustmentKind(args.kind), amount=args.amount, note=args.note, admin_id=args.admin,
        ))
    if command == "book":
        return service.create_booking(CreateBookingRequest(
            mentee_id=args.mentee_id, mentor_id=args.mentor_id, total_cost=args.cost,
        ))
    if command == "complete":
        return service.complete_booking(args.booking_id)
    if command == "cancel":
        return service.cancel_booking(args.booking_id, CancelBookingRequest(cancelled_by=args.by, reason=args.reason))
    if command == "no-show":
        return service.mark_no_show(args.booking_id, NoShowRequest(absent_party=AbsentParty(args.absent)))
    if command == "dispute":
        return service.report_dispute(args.booking_id, ReportDisputeRequest(reason=args.reason, evidence=args.evidence))
    if command == "resolve":
        return service.resolve_dispute(args.booking_id, ResolveDisputeRequest(
            outcome=DisputeOutcome(args.outcome), note=args.note, admin_id=args.admin,
        ))
    if command == "request-payout":
        return service.request_payout(PayoutRequest(
            user_id=args.user_id, amount=args.amount, method=args.method, note=args.note,
        ))
    if command == "approve":
        return service.approve_payout(args.payout_id, ApprovePayoutRequest(method=args.method, admin_note=args.note))
    if command == "reject":
        return service.reject_payout(args.payout_id, RejectPayoutRequest(reason=args.reason))
    if command == "pay":
        return service.mark_payout_paid(args.payout_id, MarkPayoutPaidRequest(evidence_file=args.evidence))
    if command == "fail":
        return service.mark_payout_failed(args.payout_id, MarkPayoutFailedRequest(reason=args.reason))
    if command == "retry":
        return service.retry_payout(args.payout_id, RetryPayoutRequest(admin_note=args.note))
    if command == "health":
        return service.health()
    if command == "audit":
        reports = {
            "credits": service.reports.credit_stats,
            "cac": service.reports.cac_dashboard,
            "solvency": service.reports.solvency,
            "daily": service.reports.daily_revenue,
        }
        return reports[args.report]()
    if command == "logs":
        return service.system_logs(args.limit)
    raise ValueError(f"Unknown command {command}")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config()
    setup_logger(level=config.log_level, stream=sys.stderr)

    state_file = Path(args.state or config.state_file or DEFAULT_STATE_FILE)
    if args.command != "seed" and state_file.exists():
        storage = InMemoryStorage.load(str(state_file), max_logs=config.max_log_entries)
    else:
        storage = InMemoryStorage(max_logs=config.max_log_entries)
    service = LedgerService(storage, config)

    try:
        result = run(service, args)
    except SettlementError as e:
        logger.error("%s failed: %s", args.command, e)
        print(f"error: {e}", file=sys.stderr)
        return 1

    storage.save(str(state_file))
    print(_dump(result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
