"""Security module — upload scanning, virus-scan seam, rate limiting, encryption."""
