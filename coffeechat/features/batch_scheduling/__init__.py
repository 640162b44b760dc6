"""
Batch scheduling feature package.

This vertical slice keeps every layer of the batch coffee-chat flow
co-located: domain models, the allocation pipeline, the Postgres
repository, lifecycle services, background jobs and the API router.
"""

__all__ = ["api", "domain", "jobs", "pipeline", "repository", "services"]
