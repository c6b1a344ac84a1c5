"""
Match Resolver
Turns ranked candidates into a one-to-one assignment per invoice, classifies
every invoice line, plans the ledger rows for this run and derives the
discrepancy report.

Assignment is greedy by descending score followed by a repair pass of
single-step augmenting swaps. Same inputs always give the same assignment.
"""

from typing import Dict, Iterable, List, Optional, Set, Tuple

from invoice_recon.config import Config, get_config
from invoice_recon.schemas.invoice import MatchStatus
from invoice_recon.schemas.ledger import MatchDecision, MatchingRecord, PlannedRecord
from invoice_recon.schemas.matching import (
    CandidateScore,
    LineItemOutcome,
    Manual,
    Matched,
    NormalizedLineItem,
    Partial,
    Unmatched,
    Unparseable,
)
from invoice_recon.schemas.output import DiscrepancyDetail
from invoice_recon.state import ReconciliationState
from invoice_recon.utils import calculate_percentage_variance, id_sort_key
from invoice_recon.utils.logging import setup_logging, log_discrepancy, log_stage_action
from invoice_recon.utils.money import format_minor


logger = setup_logging(__name__)
config = get_config()

STAGE_NAME = "MatchResolver"

# Scores are rounded to 4 dp; anything smaller is float noise
_EPSILON = 1e-9


def _triple_key(candidate: CandidateScore) -> Tuple:
    return (
        -candidate.score,
        id_sort_key(candidate.line_item_id),
        id_sort_key(candidate.po_line_item_id),
    )


def greedy_assignment(candidates: Dict[str, List[CandidateScore]]) -> Dict[str, CandidateScore]:
    """
    Accept (line, PO line) pairs in descending score order while both
    sides are still free.
    """
    triples = sorted(
        (c for ranked in candidates.values() for c in ranked),
        key=_triple_key,
    )

    assignment: Dict[str, CandidateScore] = {}
    taken: Set[str] = set()
    for candidate in triples:
        if candidate.line_item_id in assignment or candidate.po_line_item_id in taken:
            continue
        assignment[candidate.line_item_id] = candidate
        taken.add(candidate.po_line_item_id)

    return assignment


def _effective_score(candidate: Optional[CandidateScore], threshold: float) -> float:
    """Score a pair contributes after classification; released pairs count 0."""
    if candidate is None or candidate.score < threshold:
        return 0.0
    return candidate.score


def _find_improving_swap(
    line_id: str,
    candidates: Dict[str, List[CandidateScore]],
    assignment: Dict[str, CandidateScore],
    holders: Dict[str, str],
    threshold: float,
) -> Optional[List[CandidateScore]]:
    """
    Look for a move that raises the total score for ``line_id``.

    Either the line takes a free PO line with a better score, or it takes
    PO line P from its holder B while B moves to a free candidate Q.
    Pairs scoring below ``threshold`` are released by classification, so
    they count as 0 toward the total.

    Returns:
        The new pairs to install, or None if no improving move exists
    """
    current = assignment.get(line_id)
    current_score = _effective_score(current, threshold)
    current_po = current.po_line_item_id if current else None

    for candidate in candidates.get(line_id, []):
        if candidate.po_line_item_id == current_po:
            continue

        candidate_score = _effective_score(candidate, threshold)
        holder_id = holders.get(candidate.po_line_item_id)
        if holder_id is None:
            if candidate_score > current_score + _EPSILON:
                return [candidate]
            continue

        holder_score = _effective_score(assignment[holder_id], threshold)
        for alternative in candidates.get(holder_id, []):
            if alternative.po_line_item_id == candidate.po_line_item_id:
                continue
            free = (
                alternative.po_line_item_id not in holders
                or alternative.po_line_item_id == current_po
            )
            if not free:
                continue
            gain = (
                candidate_score
                + _effective_score(alternative, threshold)
                - current_score
                - holder_score
            )
            if gain > _EPSILON:
                return [candidate, alternative]

    return None


def resolve_assignment(
    candidates: Dict[str, List[CandidateScore]],
    cfg: Config = None,
) -> Dict[str, CandidateScore]:
    """
    Build the one-to-one assignment for one invoice.

    Args:
        candidates: line_item_id -> ranked candidates

    Returns:
        line_item_id -> assigned candidate; no PO line appears twice
    """
    cfg = cfg or config
    assignment = greedy_assignment(candidates)
    holders = {c.po_line_item_id: line_id for line_id, c in assignment.items()}

    swaps = 0
    improved = True
    while improved:
        improved = False
        for line_id in sorted(candidates, key=id_sort_key):
            current = assignment.get(line_id)
            if current is not None and current.score >= cfg.PARTIAL_THRESHOLD:
                continue

            move = _find_improving_swap(
                line_id, candidates, assignment, holders, cfg.PARTIAL_THRESHOLD
            )
            if move is None:
                continue

            if current is not None:
                del holders[current.po_line_item_id]
            for pair in move:
                previous = assignment.get(pair.line_item_id)
                if previous is not None and holders.get(previous.po_line_item_id) == pair.line_item_id:
                    del holders[previous.po_line_item_id]
                assignment[pair.line_item_id] = pair
                holders[pair.po_line_item_id] = pair.line_item_id

            swaps += 1
            improved = True
            logger.debug(
                f"[{STAGE_NAME}] Repair swap for {line_id}: "
                + ", ".join(f"{p.line_item_id}->{p.po_line_item_id}" for p in move)
            )
            break

    if swaps:
        logger.info(f"[{STAGE_NAME}] Repair pass applied {swaps} swap(s)")

    return assignment


def classify(
    item: NormalizedLineItem,
    assigned: Optional[CandidateScore],
    ranked: List[CandidateScore],
    reviewer_rejection: Optional[MatchingRecord] = None,
    cfg: Config = None,
) -> LineItemOutcome:
    """
    Classify one invoice line.

    unparseable -> Unparseable (manual)
    score >= matched threshold -> Matched
    score >= partial threshold -> Partial
    reviewer rejected, nothing acceptable since -> Manual
    otherwise -> Unmatched (any low-scoring PO line is released)
    """
    cfg = cfg or config

    if item.unparseable:
        return Unparseable(line_item_id=item.ref_id, diagnostics=item.diagnostics)

    if assigned is not None and assigned.score >= cfg.MATCHED_THRESHOLD:
        return Matched(
            line_item_id=item.ref_id,
            po_line_item_id=assigned.po_line_item_id,
            score=assigned.score,
        )
    if assigned is not None and assigned.score >= cfg.PARTIAL_THRESHOLD:
        return Partial(
            line_item_id=item.ref_id,
            po_line_item_id=assigned.po_line_item_id,
            score=assigned.score,
        )

    if reviewer_rejection is not None:
        return Manual(
            line_item_id=item.ref_id,
            reason=reviewer_rejection.reason or "match rejected by reviewer",
            rejected_po_line_item_id=reviewer_rejection.po_line_item_id,
        )

    best = assigned or (ranked[0] if ranked else None)
    return Unmatched(
        line_item_id=item.ref_id,
        best_po_line_item_id=best.po_line_item_id if best else None,
        best_score=best.score if best else None,
    )


def classify_all(
    invoice_items: List[NormalizedLineItem],
    candidates: Dict[str, List[CandidateScore]],
    assignment: Dict[str, CandidateScore],
    current_records: Dict[str, MatchingRecord],
    cfg: Config = None,
) -> List[LineItemOutcome]:
    """Classify every invoice line, in invoice order."""
    outcomes = []
    for item in invoice_items:
        current = current_records.get(item.ref_id)
        rejection = current if current is not None and current.is_reviewer_rejection else None
        outcomes.append(
            classify(
                item,
                assignment.get(item.ref_id),
                candidates.get(item.ref_id, []),
                rejection,
                cfg,
            )
        )
    return outcomes


def _desired_record(invoice_id: str, outcome: LineItemOutcome) -> PlannedRecord:
    """The ledger row that represents an outcome."""
    if isinstance(outcome, (Matched, Partial)):
        return PlannedRecord(
            invoice_id=invoice_id,
            line_item_id=outcome.line_item_id,
            po_line_item_id=outcome.po_line_item_id,
            score=outcome.score,
            decision=MatchDecision.ACCEPTED,
            reason=f"{outcome.kind} at score {outcome.score:.4f}",
        )
    if isinstance(outcome, Unmatched):
        reason = (
            "no candidate above floor"
            if outcome.best_po_line_item_id is None
            else f"best candidate score {outcome.best_score:.4f} below partial threshold"
        )
        return PlannedRecord(
            invoice_id=invoice_id,
            line_item_id=outcome.line_item_id,
            po_line_item_id=outcome.best_po_line_item_id,
            score=outcome.best_score or 0.0,
            decision=MatchDecision.REJECTED,
            reason=reason,
        )
    if isinstance(outcome, Unparseable):
        fields = sorted({d.field for d in outcome.diagnostics})
        return PlannedRecord(
            invoice_id=invoice_id,
            line_item_id=outcome.line_item_id,
            decision=MatchDecision.REJECTED,
            reason=f"unparseable: {', '.join(fields) or 'line item'}",
        )
    return PlannedRecord(
        invoice_id=invoice_id,
        line_item_id=outcome.line_item_id,
        decision=MatchDecision.REJECTED,
        reason=outcome.reason,
    )


def _record_unchanged(record: MatchingRecord, planned: PlannedRecord) -> bool:
    return (
        record.decision == planned.decision
        and record.po_line_item_id == planned.po_line_item_id
        and abs(record.score - planned.score) <= _EPSILON
    )


def plan_ledger_writes(
    invoice_id: str,
    outcomes: Iterable[LineItemOutcome],
    current_records: Dict[str, MatchingRecord],
) -> List[PlannedRecord]:
    """
    Plan the ledger rows for one run.

    Unchanged lines produce nothing, so re-running on unchanged data writes
    no rows. A changed line gets a new row that supersedes its current one.
    A reviewer's rejection stays current while the line remains manual.
    """
    planned = []
    for outcome in outcomes:
        current = current_records.get(outcome.line_item_id)

        if isinstance(outcome, Manual) and current is not None and current.is_reviewer_rejection:
            continue

        desired = _desired_record(invoice_id, outcome)
        if current is not None and _record_unchanged(current, desired):
            continue

        desired.supersedes = current.id if current is not None else None
        planned.append(desired)

    return planned


def _po_value(item: Optional[NormalizedLineItem], attr: str):
    return getattr(item, attr) if item is not None else None


def build_discrepancies(
    outcomes: List[LineItemOutcome],
    invoice_items: Dict[str, NormalizedLineItem],
    po_items: Dict[str, NormalizedLineItem],
    cfg: Config = None,
) -> List[DiscrepancyDetail]:
    """
    Derive the discrepancy report from this run's outcomes.

    no_po is reported once per invoice and replaces per-line no_match
    entries when there is nothing to match against.
    """
    cfg = cfg or config
    discrepancies: List[DiscrepancyDetail] = []

    if not po_items and outcomes:
        discrepancies.append(
            DiscrepancyDetail(
                type="no_po",
                severity="high",
                explanation="No active purchase order line items for this vendor and client",
            )
        )

    for outcome in outcomes:
        line_id = outcome.line_item_id
        inv = invoice_items.get(line_id)

        if isinstance(outcome, Unparseable):
            discrepancies.append(
                DiscrepancyDetail(
                    type="unparseable",
                    severity="medium",
                    line_item_id=line_id,
                    explanation="; ".join(f"{d.field}: {d.message}" for d in outcome.diagnostics)
                    or "Line item could not be normalized",
                )
            )
        elif isinstance(outcome, Manual):
            discrepancies.append(
                DiscrepancyDetail(
                    type="rejected_match",
                    severity="medium",
                    line_item_id=line_id,
                    po_value=outcome.rejected_po_line_item_id,
                    explanation=f"Reviewer rejected the proposed match: {outcome.reason}",
                )
            )
        elif isinstance(outcome, Unmatched):
            if po_items:
                discrepancies.append(
                    DiscrepancyDetail(
                        type="no_match",
                        severity="high",
                        line_item_id=line_id,
                        invoice_value=format_minor(_po_value(inv, "amount_minor")),
                        explanation="No PO line item matched this invoice line",
                    )
                )
        else:
            po = po_items.get(outcome.po_line_item_id)
            inv_amount = _po_value(inv, "amount_minor")
            po_amount = _po_value(po, "amount_minor")
            if inv_amount is not None and po_amount is not None:
                variance = calculate_percentage_variance(inv_amount, po_amount) * 100
                if variance > cfg.PRICE_TOLERANCE_PERCENT:
                    discrepancies.append(
                        DiscrepancyDetail(
                            type="price_mismatch",
                            severity="medium",
                            line_item_id=line_id,
                            invoice_value=format_minor(inv_amount),
                            po_value=format_minor(po_amount),
                            explanation=(
                                f"Invoice amount differs from PO by {variance:.1f}% "
                                f"(tolerance {cfg.PRICE_TOLERANCE_PERCENT:.1f}%)"
                            ),
                        )
                    )
            inv_qty = _po_value(inv, "quantity")
            po_qty = _po_value(po, "quantity")
            if inv_qty is not None and po_qty is not None and inv_qty != po_qty:
                discrepancies.append(
                    DiscrepancyDetail(
                        type="quantity_mismatch",
                        severity="low",
                        line_item_id=line_id,
                        invoice_value=str(inv_qty),
                        po_value=str(po_qty),
                        explanation=f"Invoice quantity {inv_qty} vs PO quantity {po_qty}",
                    )
                )

    return discrepancies


async def resolution_stage(state: ReconciliationState, cfg: Config = None) -> ReconciliationState:
    """
    Match Resolver node.

    Updates state:
    - assignment
    - outcomes
    - planned_records
    - discrepancies

    Adds reasoning log entry.
    """
    cfg = cfg or config
    logger.info(f"[{STAGE_NAME}] Resolving assignment for invoice {state.invoice_id}")

    assignment = resolve_assignment(state.candidates, cfg)
    outcomes = classify_all(
        state.normalized_invoice_items,
        state.candidates,
        assignment,
        state.current_records,
        cfg,
    )

    # Pairs below the partial threshold are released
    state.assignment = {
        o.line_item_id: assignment[o.line_item_id]
        for o in outcomes
        if o.assigned_po_line_item_id is not None
    }
    state.outcomes = outcomes
    state.planned_records = plan_ledger_writes(state.invoice_id, outcomes, state.current_records)
    state.discrepancies = build_discrepancies(
        outcomes,
        {n.ref_id: n for n in state.normalized_invoice_items},
        {n.ref_id: n for n in state.normalized_po_items},
        cfg,
    )

    for d in state.discrepancies:
        log_discrepancy(logger, d.type, d.severity, d.explanation, d.line_item_id)

    counts = {status.value: 0 for status in MatchStatus}
    for outcome in outcomes:
        counts[outcome.match_status.value] += 1

    log_stage_action(
        logger,
        STAGE_NAME,
        "resolved",
        details={
            "invoice_id": state.invoice_id,
            "run_id": state.run_id,
            "planned_records": len(state.planned_records),
            **counts,
        },
    )

    state.add_reasoning(
        stage_name=STAGE_NAME,
        message=(
            f"{counts['matched']} matched, {counts['partial']} partial, "
            f"{counts['unmatched']} unmatched, {counts['manual']} manual; "
            f"{len(state.planned_records)} ledger row(s) planned"
        ),
    )

    return state
