"""File upload endpoint for beat parsing."""

import logging
import os
import tempfile

from fastapi import APIRouter, File, HTTPException, Query, UploadFile

from beatparser.analysis.engine import BeatParser
from beatparser.analysis.models import ParseResult
from beatparser.api.schemas import (
    AnalysisResponse,
    BeatResponse,
    SelectionQualityResponse,
    TempoCurvePointResponse,
    TempoResponse,
    TimeSignatureResponse,
)
from beatparser.config import settings
from beatparser.errors import ConfigurationError, InputError

logger = logging.getLogger(__name__)

router = APIRouter()

ALLOWED_EXTENSIONS = {".wav", ".mp3", ".flac", ".ogg", ".m4a", ".aac"}


def to_response(result: ParseResult) -> AnalysisResponse:
    tempo = result.tempo
    selection = result.selection
    quality = selection.quality if selection else None
    return AnalysisResponse(
        beats=[
            BeatResponse(
                timestamp=b.timestamp,
                confidence=b.confidence,
                strength=b.strength,
                interpolated=b.interpolated,
                source=b.metadata.get("source"),
            )
            for b in result.beats
        ],
        tempo=TempoResponse(
            bpm=tempo.bpm,
            confidence=tempo.confidence,
            phase=tempo.phase,
            time_signature=TimeSignatureResponse(
                numerator=tempo.time_signature.numerator,
                denominator=tempo.time_signature.denominator,
                confidence=tempo.time_signature.confidence,
            ) if tempo.time_signature else None,
            tempo_curve=[
                TempoCurvePointResponse(time=p.time, bpm=p.bpm, confidence=p.confidence)
                for p in tempo.tempo_curve
            ],
        ),
        duration=result.duration,
        requested_count=selection.requested_count if selection else len(result.beats),
        clamped=selection.clamped if selection else False,
        strategy=selection.strategy_used if selection else "",
        genre=result.genre,
        candidate_count=result.candidate_count,
        quality=SelectionQualityResponse(
            coverage=quality.coverage,
            diversity=quality.diversity,
            spacing=quality.spacing,
            overall=quality.overall,
        ) if quality else None,
        processing_time=result.metadata.get("processing_time", 0.0),
    )


@router.post("/analyze", response_model=AnalysisResponse)
async def analyze_file(
    file: UploadFile = File(...),
    count: int | None = Query(default=None, ge=1, description="Exact number of beats to return"),
    strategy: str | None = Query(default=None, description="energy, regular, musical or adaptive"),
):
    """Parse an uploaded audio file into beats."""
    suffix = ""
    if file.filename and "." in file.filename:
        suffix = "." + file.filename.rsplit(".", 1)[-1].lower()
        if suffix not in ALLOWED_EXTENSIONS:
            raise HTTPException(400, f"Unsupported format. Use: {', '.join(sorted(ALLOWED_EXTENSIONS))}")

    content = await file.read()
    if len(content) > settings.max_upload_mb * 1024 * 1024:
        raise HTTPException(400, f"File too large (max {settings.max_upload_mb} MB)")

    # librosa needs a file path for some formats
    with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as tmp:
        tmp.write(content)
        tmp_path = tmp.name

    try:
        result = BeatParser().parse_file(tmp_path, target_count=count, strategy=strategy)
        return to_response(result)
    except (InputError, ConfigurationError) as e:
        raise HTTPException(400, str(e))
    except Exception as e:
        logger.exception("Analysis failed")
        raise HTTPException(500, f"Analysis failed: {str(e)}")
    finally:
        try:
            os.unlink(tmp_path)
        except OSError:
            logger.warning(f"Could not remove temporary file {tmp_path}")
