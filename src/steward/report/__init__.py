"""
Reporting module for Steward.

Rich terminal rendering of audit trails, proposals and guardrail decisions.

Example:
    from steward.report import generate_audit_report

    generate_audit_report("studio-1", "steward.db")
"""

from steward.report.console import (
    generate_audit_report,
    print_audit_trail,
    print_decision,
    print_proposal_detail,
    print_proposals,
    summarize_records,
)

__all__ = [
    "generate_audit_report",
    "print_audit_trail",
    "print_decision",
    "print_proposal_detail",
    "print_proposals",
    "summarize_records",
]
