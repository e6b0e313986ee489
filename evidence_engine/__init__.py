"""Evidence ingestion engine — security scan, extraction, OCR, job queue, structuring."""
