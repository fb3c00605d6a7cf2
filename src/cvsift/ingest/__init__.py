"""cvsift ingest pipeline: loader, extractor, chunker and the ingestion pipeline."""

from cvsift.ingest.chunker import Chunk, SentenceChunker
from cvsift.ingest.extract import extract
from cvsift.ingest.loader import LoadedLocation, RawDocument, load_documents, load_location
from cvsift.ingest.pipeline import (
    BatchReport,
    IngestionPipeline,
    IngestOptions,
    IngestResult,
    PreviewFile,
)

__all__ = [
    "BatchReport",
    "Chunk",
    "IngestOptions",
    "IngestResult",
    "IngestionPipeline",
    "PreviewFile",
    "RawDocument",
    "SentenceChunker",
    "extract",
    "load_documents",
    "load_location",
    "LoadedLocation",
]
