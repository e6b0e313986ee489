"""Evidence persistence, URL fetching and the ingestion service."""
