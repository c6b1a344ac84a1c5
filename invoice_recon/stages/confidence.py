"""
Confidence Aggregator
Combines OCR confidence with match quality into document-level and
line-level confidence on the 0-100 scale.

    final = w_ocr * ocr_confidence + w_match * match_confidence * 100

Only writes values; the lifecycle stage decides what they gate.
"""

from statistics import mean
from typing import Dict, List, Optional

from invoice_recon.config import Config, get_config
from invoice_recon.schemas.invoice import InvoiceLineItem
from invoice_recon.schemas.matching import LineItemOutcome
from invoice_recon.state import ReconciliationState
from invoice_recon.utils.confidence import (
    combine_confidence_scores,
    interpret_confidence,
    percent_to_unit,
    unit_to_percent,
)
from invoice_recon.utils.logging import setup_logging, log_stage_action


logger = setup_logging(__name__)
config = get_config()

STAGE_NAME = "ConfidenceAggregator"


def match_confidence(outcomes: List[LineItemOutcome]) -> float:
    """
    Average assigned score across all invoice lines (0-1).

    Unmatched and manual lines count as zero; an invoice without lines
    has no match quality.
    """
    if not outcomes:
        return 0.0
    return round(mean(o.assigned_score for o in outcomes), 4)


def final_confidence(ocr_confidence: float, match_conf: float, cfg: Config = None) -> float:
    """
    Document-level confidence (0-100, 2 dp).

    Args:
        ocr_confidence: OCR document confidence, 0-100
        match_conf: Match confidence, 0-1
    """
    cfg = cfg or config
    combined = combine_confidence_scores(
        [percent_to_unit(ocr_confidence), match_conf],
        weights=[cfg.OCR_CONFIDENCE_WEIGHT, cfg.MATCH_CONFIDENCE_WEIGHT],
    )
    return unit_to_percent(combined)


def line_confidence(
    outcome: LineItemOutcome,
    line_ocr_confidence: Optional[float],
    document_ocr_confidence: float,
    cfg: Config = None,
) -> float:
    """Line-level confidence; falls back to the document OCR confidence."""
    ocr = document_ocr_confidence if line_ocr_confidence is None else line_ocr_confidence
    return final_confidence(ocr, outcome.assigned_score, cfg)


def apply_line_confidence(
    outcomes: List[LineItemOutcome],
    line_items: List[InvoiceLineItem],
    document_ocr_confidence: float,
    cfg: Config = None,
) -> List[LineItemOutcome]:
    """Return outcomes with ``line_confidence`` filled in."""
    ocr_by_line: Dict[str, Optional[float]] = {
        item.id: item.ocr_confidence for item in line_items
    }
    return [
        o.model_copy(
            update={
                "line_confidence": line_confidence(
                    o, ocr_by_line.get(o.line_item_id), document_ocr_confidence, cfg
                )
            }
        )
        for o in outcomes
    ]


async def aggregation_stage(state: ReconciliationState, cfg: Config = None) -> ReconciliationState:
    """
    Confidence Aggregator node.

    Updates state:
    - match_confidence
    - final_confidence
    - outcomes (line_confidence)

    Adds reasoning log entry.
    """
    cfg = cfg or config
    ocr = state.invoice.ocr.confidence

    state.match_confidence = match_confidence(state.outcomes)
    state.final_confidence = final_confidence(ocr, state.match_confidence, cfg)
    state.outcomes = apply_line_confidence(state.outcomes, state.invoice.line_items, ocr, cfg)

    level, description = interpret_confidence(state.final_confidence / 100)

    log_stage_action(
        logger,
        STAGE_NAME,
        "aggregated",
        details={
            "invoice_id": state.invoice_id,
            "ocr_confidence": ocr,
            "match_confidence": state.match_confidence,
            "level": level,
        },
        confidence=state.final_confidence,
    )

    state.add_reasoning(
        stage_name=STAGE_NAME,
        message=(
            f"OCR {ocr:.2f} and match {state.match_confidence:.4f} -> "
            f"final {state.final_confidence:.2f} ({description})"
        ),
        confidence=state.final_confidence,
    )

    return state
