"""Pipeline: fallback orchestration, structured extraction, end-to-end intake, worker pool."""

from pipeline.orchestrator import FallbackOrchestrator
from pipeline.extractor import StructuredExtractor, classify_document, resolve_kind
from pipeline.intake_pipeline import IntakePipeline, build_pipeline
from pipeline.worker_pool import IntakeJob, IntakeWorkerPool

__all__ = [
    "FallbackOrchestrator",
    "StructuredExtractor",
    "classify_document",
    "resolve_kind",
    "IntakePipeline",
    "build_pipeline",
    "IntakeJob",
    "IntakeWorkerPool",
]
