"""
FastAPI Backend for FIL Frame Fitting.
Provides endpoints for FIL parsing, rotation, face fitting and FIL export.
"""

import os
from typing import Optional, List

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from fil_service import get_fil_service

# Create FastAPI app
app = FastAPI(
    title="FIL Frame Fitting API",
    description="API for lens-trace geometry and pupillary measurements on face photos",
    version="1.0.0"
)

# Add CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class FilTextRequest(BaseModel):
    """Request with raw FIL text."""
    fil_text: str


class RotateRequest(BaseModel):
    """Rotate the radii of a FIL."""
    fil_text: str
    angle_deg: float


class MeasureRequest(BaseModel):
    """Fit a FIL to a face photo given detected points."""
    fil_text: str
    px_per_mm: Optional[float] = None
    pupil_od: Optional[List[float]] = None
    pupil_oi: Optional[List[float]] = None
    midline: Optional[List[List[float]]] = None
    midline_x: Optional[float] = None
    rotation_deg: float = 0.0
    dbl_mm: Optional[float] = None
    centre_y_px: Optional[float] = None
    rim_bottom_od: Optional[float] = None
    rim_bottom_oi: Optional[float] = None
    image_width: Optional[int] = None


class ExportRequest(BaseModel):
    """Export a precal trace as FIL."""
    job_id: str
    px_per_mm: float
    centre_px: List[float]
    radii_mm: Optional[List[float]] = None
    outline_px: Optional[List[List[float]]] = None


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "FIL Frame Fitting API"}


@app.post("/api/parse-fil")
async def parse_fil(request: FilTextRequest):
    """Parse FIL text and return fields plus computed geometry."""
    try:
        result = get_fil_service().parse_fil(request.fil_text)
        return JSONResponse(content=result)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Parsing failed: {str(e)}")


@app.post("/api/rotate")
async def rotate(request: RotateRequest):
    """Rotate a traced shape and return the new radii and geometry."""
    try:
        result = get_fil_service().rotate(request.fil_text, request.angle_deg)
        return JSONResponse(content=result)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Rotation failed: {str(e)}")


@app.post("/api/measure")
async def measure(request: MeasureRequest):
    """Place the traced lenses on the face and measure DNP, bridge and heights."""
    try:
        result = get_fil_service().measure(request.model_dump())
        return JSONResponse(content=result)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Measurement failed: {str(e)}")


@app.post("/api/export-fil")
async def export_fil(request: ExportRequest):
    """Build a FIL from a precal trace and save it."""
    try:
        result = get_fil_service().export_fil(
            request.job_id,
            request.px_per_mm,
            request.centre_px,
            radii_mm=request.radii_mm,
            outline_px=request.outline_px,
        )
        return JSONResponse(content=result)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Export failed: {str(e)}")


@app.get("/api/exports")
async def list_exports():
    """List exported FIL files."""
    service = get_fil_service()
    return {"files": service.list_exports()}


@app.get("/api/exports/{name}")
async def get_export(name: str):
    """Download an exported FIL file."""
    service = get_fil_service()
    if name not in service.list_exports():
        raise HTTPException(status_code=404, detail="Export not found")

    path = os.path.join(service.config.export_dir, name)
    with open(path, "rb") as fh:
        text = fh.read().decode("iso-8859-1")
    return PlainTextResponse(text)


if __name__ == "__main__":
    import uvicorn
    print("\n" + "="*60)
    print("  FIL Frame Fitting API Server")
    print("="*60)
    print("\n  Starting server on http://0.0.0.0:8000")
    print("  API docs: http://localhost:8000/docs")
    print("\n" + "="*60 + "\n")

    uvicorn.run(app, host="0.0.0.0", port=8000)
