"""Knowledge retrieval and answer-confidence service for customer support."""
