"""
PDF Press Backend - REST API for document conversions

This package provides a FastAPI-based web service that runs PDF, image and
Word conversions on a memory-constrained host. It offers:

- PDF compression (Ghostscript, with a PyMuPDF fallback)
- PDF merge and split
- Image to PDF and PDF to image conversion
- PDF to Word and Word to PDF via headless LibreOffice
- Health reporting of memory, admission slots and optional tools

Every conversion runs as a job that must be admitted by a bounded
concurrency gate, runs under a single execution deadline, and has all of its
files deleted on every exit path.

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - job_manager: Per-request orchestration and job history
    - admission: Concurrency limit with a FIFO wait queue
    - executor: Runs one job under a deadline and classifies the outcome
    - resources: Artifact registry with guaranteed cleanup
    - tool_probe: Availability checks for optional binaries
    - reaper: Periodic sweep of stale artifacts
    - converters: Thin wrappers around PyMuPDF, Pillow, Ghostscript and LibreOffice
    - configuration: Settings loading and validation

Usage:
    Run the API server with:
        uvicorn pdfpress_backend.main:app --host 0.0.0.0 --port 3000

    Or use the console script:
        pdfpress-backend
"""
