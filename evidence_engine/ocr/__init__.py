"""OCR subsystem — Pillow preprocessing, Tesseract recognition, quality evaluation."""
