"""Analytics ingestion: GA4 client, credential refresh and sample models."""
