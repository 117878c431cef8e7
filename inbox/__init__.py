"""WhatsApp inbox service: webhook ingestion, dual-mode storage and realtime fanout."""
