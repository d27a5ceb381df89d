"""Domain services: scoring, memory, aggregation, adaptation and response decisions."""
