"""Utilities for formatting provenance information."""

from collections import Counter

from ..core.models import DoiResolutionRecord, MaterializeResult


def format_resolution_report(record: DoiResolutionRecord) -> str:
    """Return a human-readable status summary of a DOI resolution record."""
    lines = [f"DOI: {record.doi}", f"Status: {record.status}"]
    if record.message:
        lines.append(record.message)

    by_kind = Counter(str(c.kind) for c in record.extracted)
    summary = ", ".join(f"{kind}={n}" for kind, n in sorted(by_kind.items())) or "none"
    lines.append(f"Extracted: {len(record.extracted)} ({summary})")

    statuses = Counter(str(o.status) for o in record.validation.values())
    lines.append(
        "Validated: "
        + (", ".join(f"{status}={n}" for status, n in sorted(statuses.items())) or "none")
    )
    lines.append(f"Hydrated edges: {len(record.hydrated)}")

    lines.append(f"Resolved targets: {len(record.resolved_targets)}")
    for target in record.resolved_targets:
        fmt = f" [{target.format}]" if target.format else ""
        lines.append(f"  ✓ {target.specifier}{fmt}")

    if record.unresolved:
        lines.append(f"Unresolved: {len(record.unresolved)}")
        for item in record.unresolved:
            detail = f" ({item.detail})" if item.detail else ""
            lines.append(f"  ✗ {item.identifier.key}: {item.reason}{detail}")
    return "\n".join(lines)


def format_fetch_report(results: list[MaterializeResult]) -> str:
    """One status line per fetched target."""
    lines = []
    for result in results:
        fmt = f" [{result.target.format}]" if result.target.format else ""
        if result.ok:
            where = result.project_path or ""
            lines.append(f"✓ {result.target.specifier}{fmt}: {result.action} -> {where}")
        else:
            message = (result.error or {}).get("message", "failed")
            lines.append(f"✗ {result.target.specifier}{fmt}: {message}")
    return "\n".join(lines)
