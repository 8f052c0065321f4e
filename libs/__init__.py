"""Graph copilot shared libraries.

This package contains reusable components:
- common: Configuration
- caching: Redis client management
- graph: Graph records and read-only data sources
- threads: Durable conversation thread storage
"""
