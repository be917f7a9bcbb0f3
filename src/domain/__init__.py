"""
Domain layer for message processing business logic.

This layer contains:
- Data models (messages, outcomes, durable records)
- Pipeline definition and builder
- The processor that executes pipelines
- Built-in stages
"""
