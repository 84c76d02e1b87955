"""Observability endpoints for loyalty telemetry and Prometheus metrics."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from iptv_manager_api.api.dependencies.security import require_internal_api_key
from iptv_manager_api.observability.loyalty import get_loyalty_store
from iptv_manager_api.observability.scheduler import get_scheduler_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/loyalty",
    dependencies=[Depends(require_internal_api_key)],
    summary="Loyalty engine observability snapshot",
)
async def get_loyalty_snapshot() -> dict[str, object]:
    """Ledger, referral, redemption and scheduler counters (requires internal API key)."""
    payload = get_loyalty_store().snapshot().as_dict()
    payload["scheduler"] = get_scheduler_store().snapshot().as_dict()
    return payload


def _format_metric(name: str, description: str, value: int | float, labels: dict[str, str] | None = None) -> list[str]:
    label_fragment = ""
    if labels:
        formatted = ",".join(f'{key}="{val}"' for key, val in sorted(labels.items()))
        label_fragment = f"{{{formatted}}}"
    return [
        f"# HELP {name} {description}",
        f"# TYPE {name} gauge",
        f"{name}{label_fragment} {value}",
    ]


@router.get(
    "/prometheus",
    dependencies=[Depends(require_internal_api_key)],
    summary="Prometheus-formatted observability metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    loyalty_snapshot = get_loyalty_store().snapshot()
    scheduler_snapshot = get_scheduler_store().snapshot()

    lines: list[str] = []

    ledger = loyalty_snapshot.ledger
    lines.extend(_format_metric("iptv_loyalty_credits_total", "Ledger credits recorded", ledger.get("credit", 0)))
    lines.extend(
        _format_metric("iptv_loyalty_credit_points_total", "Points credited to members", ledger.get("credit_points", 0))
    )
    lines.extend(_format_metric("iptv_loyalty_debits_total", "Ledger debits recorded", ledger.get("debit", 0)))
    lines.extend(
        _format_metric("iptv_loyalty_debit_points_total", "Points spent by members", ledger.get("debit_points", 0))
    )
    lines.extend(
        _format_metric(
            "iptv_loyalty_duplicate_credits_total",
            "Credits rejected by the idempotency key",
            ledger.get("duplicate", 0),
        )
    )
    lines.extend(
        _format_metric(
            "iptv_loyalty_insufficient_points_total",
            "Debits refused for lack of balance",
            ledger.get("insufficient_points", 0),
        )
    )

    for event, value in sorted(loyalty_snapshot.referrals.items()):
        lines.extend(
            _format_metric(
                "iptv_loyalty_referral_events_total",
                "Referral lifecycle events",
                value,
                labels={"event": event},
            )
        )

    for event, value in sorted(loyalty_snapshot.redemptions.items()):
        lines.extend(
            _format_metric(
                "iptv_loyalty_redemption_events_total",
                "Redemption lifecycle events",
                value,
                labels={"event": event},
            )
        )

    for key, value in sorted(loyalty_snapshot.approvals.items()):
        if key == "total":
            continue
        target, _, action = key.partition(":")
        lines.extend(
            _format_metric(
                "iptv_loyalty_approvals_total",
                "Staff approvals applied",
                value,
                labels={"target": target, "action": action},
            )
        )

    lines.extend(
        _format_metric(
            "iptv_loyalty_compensation_failures",
            "Recent redemption reversals that need manual reconciliation",
            len(loyalty_snapshot.compensation_failures),
        )
    )

    scheduler_totals = scheduler_snapshot.totals
    lines.extend(
        _format_metric(
            "iptv_loyalty_scheduler_runs_total",
            "Total loyalty scheduler dispatches",
            scheduler_totals.get("runs", 0),
        )
    )
    lines.extend(
        _format_metric(
            "iptv_loyalty_scheduler_success_total",
            "Successful loyalty scheduler runs",
            scheduler_totals.get("success", 0),
        )
    )
    lines.extend(
        _format_metric(
            "iptv_loyalty_scheduler_run_failures_total",
            "Loyalty scheduler runs that exhausted retries",
            scheduler_totals.get("run_failures", 0),
        )
    )
    lines.extend(
        _format_metric(
            "iptv_loyalty_scheduler_retries_total",
            "Loyalty scheduler retries triggered",
            scheduler_totals.get("retries", 0),
        )
    )

    for job_id, job_state in scheduler_snapshot.jobs.items():
        labels = {"job_id": job_id, "task": job_state.task}
        lines.extend(
            _format_metric(
                "iptv_loyalty_scheduler_job_consecutive_failures",
                "Consecutive failed attempts per job",
                job_state.consecutive_failures,
                labels=labels,
            )
        )
        lines.extend(
            _format_metric(
                "iptv_loyalty_scheduler_job_runtime_seconds_total",
                "Accumulated runtime per job",
                round(job_state.total_runtime_seconds, 6),
                labels=labels,
            )
        )

    return PlainTextResponse("\n".join(lines) + "\n")
