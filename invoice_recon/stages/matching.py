"""
Candidate Matcher
Scores every invoice line against the PO lines linked to the invoice and
returns ranked candidates.

Score = weighted sum of
    description similarity (Jaccard over tokens)
    service-type match (binary)
    amount closeness
    quantity closeness
"""

from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from invoice_recon.config import Config, get_config
from invoice_recon.schemas.matching import CandidateScore, NormalizedLineItem
from invoice_recon.state import ReconciliationState
from invoice_recon.utils import closeness, id_sort_key
from invoice_recon.utils.logging import setup_logging, log_stage_action


logger = setup_logging(__name__)
config = get_config()

STAGE_NAME = "CandidateMatcher"


def jaccard_similarity(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    """Jaccard index of two token sets; 0 when both are empty."""
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def amount_closeness(a: Optional[int], b: Optional[int], tolerance_minor: int = 0) -> float:
    """
    Closeness of two minor-unit amounts.

    Differences within the rounding tolerance count as identical.
    """
    if a is None or b is None:
        return 0.0
    if abs(a - b) <= tolerance_minor:
        return 1.0
    return closeness(a, b)


def quantity_closeness(a, b) -> float:
    """Closeness of two quantities; 0 when either is unknown."""
    if a is None or b is None:
        return 0.0
    return closeness(a, b)


def score_pair(
    invoice_item: NormalizedLineItem,
    po_item: NormalizedLineItem,
    cfg: Config = None,
) -> CandidateScore:
    """
    Score one (invoice line, PO line) pair.

    Returns:
        CandidateScore with the rounded total and its components
    """
    cfg = cfg or config

    description_score = jaccard_similarity(
        invoice_item.description_tokens, po_item.description_tokens
    )
    service_type_match = (
        invoice_item.service_type is not None
        and invoice_item.service_type == po_item.service_type
    )
    amount_score = amount_closeness(
        invoice_item.amount_minor, po_item.amount_minor, cfg.AMOUNT_TOLERANCE_MINOR
    )
    quantity_score = quantity_closeness(invoice_item.quantity, po_item.quantity)

    total = (
        cfg.DESCRIPTION_WEIGHT * description_score
        + cfg.SERVICE_TYPE_WEIGHT * (1.0 if service_type_match else 0.0)
        + cfg.AMOUNT_WEIGHT * amount_score
        + cfg.QUANTITY_WEIGHT * quantity_score
    )
    total = max(0.0, min(1.0, round(total, cfg.SCORE_PRECISION)))

    return CandidateScore(
        line_item_id=invoice_item.ref_id,
        po_line_item_id=po_item.ref_id,
        score=total,
        description_score=round(description_score, cfg.SCORE_PRECISION),
        service_type_match=service_type_match,
        amount_score=round(amount_score, cfg.SCORE_PRECISION),
        quantity_score=round(quantity_score, cfg.SCORE_PRECISION),
    )


def candidate_sort_key(candidate: CandidateScore) -> Tuple:
    """Score descending, ties broken by lower PO line item id."""
    return (-candidate.score, id_sort_key(candidate.po_line_item_id))


def rank_candidates(
    invoice_item: NormalizedLineItem,
    po_items: Iterable[NormalizedLineItem],
    cfg: Config = None,
    excluded_po_line_item_ids: Iterable[str] = (),
) -> List[CandidateScore]:
    """
    Rank PO lines for one invoice line.

    Unparseable invoice lines get no candidates. Candidates below the
    floor score are discarded.
    """
    cfg = cfg or config
    if invoice_item.unparseable:
        return []

    excluded = set(excluded_po_line_item_ids)
    ranked = []
    for po_item in po_items:
        if po_item.ref_id in excluded:
            continue
        candidate = score_pair(invoice_item, po_item, cfg)
        logger.debug(
            f"[{STAGE_NAME}] {invoice_item.ref_id} vs {po_item.ref_id}: "
            f"score={candidate.score:.4f} (desc={candidate.description_score:.2f}, "
            f"service={candidate.service_type_match}, amount={candidate.amount_score:.2f}, "
            f"qty={candidate.quantity_score:.2f})"
        )
        if candidate.score >= cfg.CANDIDATE_FLOOR:
            ranked.append(candidate)

    return sorted(ranked, key=candidate_sort_key)


def collect_candidates(
    invoice_items: List[NormalizedLineItem],
    po_items: List[NormalizedLineItem],
    cfg: Config = None,
    excluded_pairs: Iterable[Tuple[str, str]] = (),
) -> Dict[str, List[CandidateScore]]:
    """
    Rank candidates for every invoice line.

    Args:
        invoice_items: Normalized invoice lines
        po_items: Normalized PO lines linked to the invoice
        excluded_pairs: (line_item_id, po_line_item_id) pairs a reviewer rejected

    Returns:
        line_item_id -> ranked candidates (possibly empty)
    """
    excluded: Dict[str, List[str]] = {}
    for line_item_id, po_line_item_id in excluded_pairs:
        excluded.setdefault(line_item_id, []).append(po_line_item_id)

    return {
        item.ref_id: rank_candidates(item, po_items, cfg, excluded.get(item.ref_id, ()))
        for item in invoice_items
    }


async def matching_stage(state: ReconciliationState, cfg: Config = None) -> ReconciliationState:
    """
    Candidate Matcher node.

    Updates state:
    - candidates

    Adds reasoning log entry.
    """
    cfg = cfg or config
    logger.info(f"[{STAGE_NAME}] Ranking candidates for invoice {state.invoice_id}")

    state.candidates = collect_candidates(
        state.normalized_invoice_items,
        state.normalized_po_items,
        cfg,
        state.excluded_pairs,
    )

    without_candidates = [
        line_id
        for line_id, ranked in state.candidates.items()
        if not ranked
    ]
    total_candidates = sum(len(ranked) for ranked in state.candidates.values())

    log_stage_action(
        logger,
        STAGE_NAME,
        "ranked",
        details={
            "invoice_id": state.invoice_id,
            "candidates": total_candidates,
            "lines_without_candidates": len(without_candidates),
        },
    )

    state.add_reasoning(
        stage_name=STAGE_NAME,
        message=(
            f"Scored {len(state.normalized_invoice_items)} line(s) against "
            f"{len(state.normalized_po_items)} PO line(s); {total_candidates} candidate(s) "
            f"above floor {cfg.CANDIDATE_FLOOR:.2f}; {len(without_candidates)} line(s) without candidates"
        ),
    )

    return state
