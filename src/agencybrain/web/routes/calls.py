"""Call analysis endpoints."""

from fastapi import APIRouter, HTTPException, status

from agencybrain.core.call_analysis import (
    AnalysisConfigError,
    AnalysisParseError,
    AnalysisProviderError,
    CallAnalysisError,
    CallNotFoundError,
    MissingTranscriptError,
    analyze_call,
)
from agencybrain.web.schemas import CallAnalysisResponse

router = APIRouter(prefix="/api/calls", tags=["calls"])


@router.post("/{call_id}/analyze", response_model=CallAnalysisResponse)
def analyze(call_id: str) -> CallAnalysisResponse:
    """Score a call transcript with the LLM and store the results."""
    try:
        result = analyze_call(call_id)
    except CallNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except MissingTranscriptError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except AnalysisConfigError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)) from e
    except (AnalysisProviderError, AnalysisParseError) as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
    except CallAnalysisError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    return CallAnalysisResponse(
        success=result.success,
        call_id=result.call_id,
        call=result.call.to_dict() if result.call else {},
        analysis=result.analysis,
    )
