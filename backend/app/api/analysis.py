"""
Analysis results, response evaluation and portfolio analytics endpoints.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException

from ..analytics import compute_portfolio_analytics
from ..blob_storage import BlobStorageService
from ..debug_utils import debug_helper
from ..dependencies import get_evaluator, get_storage
from ..models import ContainerType, EvaluateRequest
from ..response_evaluator import ResponseEvaluator

logger = logging.getLogger('callguard.api')

router = APIRouter(prefix="/api", tags=["analysis"])


@router.get("/analysis/{filename}")
async def get_analysis(filename: str, storage: BlobStorageService = Depends(get_storage)):
    """Stored compliance analysis for a call log."""
    try:
        analysis = await storage.download_analysis_result(filename)
    except Exception as e:
        logger.error(f"Failed to fetch analysis for {filename}: {e}")
        debug_helper.capture_exception("get_analysis", e, {"filename": filename})
        raise HTTPException(status_code=500, detail="Failed to fetch analysis")

    if analysis is None:
        raise HTTPException(status_code=404, detail=f"No analysis found for {filename}")
    return analysis


@router.post("/evaluate")
async def evaluate_response(body: EvaluateRequest, evaluator: ResponseEvaluator = Depends(get_evaluator)):
    """Score an alternative phrasing for a flagged agent response."""
    if not body.original_response or not body.alternative_response or body.violation_context is None:
        raise HTTPException(
            status_code=400,
            detail="Missing required fields: originalResponse, alternativeResponse, or violationContext",
        )
    if not body.alternative_response.strip():
        raise HTTPException(status_code=400, detail="Alternative response cannot be empty")

    try:
        result = await evaluator.evaluate(body)
        return {"success": True, "data": result.to_json_dict()}
    except ValueError as e:
        logger.error(f"Failed to parse evaluation: {e}")
        raise HTTPException(status_code=500, detail="Failed to parse AI response")
    except Exception as e:
        logger.error(f"Error during evaluation: {e}")
        debug_helper.capture_exception("evaluate_response", e)
        raise HTTPException(status_code=500, detail="Evaluation failed. Please try again.")


@router.get("/analytics")
async def get_portfolio_analytics(storage: BlobStorageService = Depends(get_storage)):
    """Risk metrics across all analyzed call logs."""
    try:
        listing = await storage.list_files(ContainerType.RAW, max_results=100000)
    except Exception as e:
        logger.error(f"Failed to load files for analytics: {e}")
        debug_helper.capture_exception("portfolio_analytics", e)
        raise HTTPException(status_code=500, detail="Failed to compute analytics")
    return compute_portfolio_analytics(listing.files).to_json_dict()
