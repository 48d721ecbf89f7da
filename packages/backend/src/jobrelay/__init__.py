"""JobRelay — reliable delivery of job completion events to live clients.

Completion events produced by the generation pipeline arrive on a durable
broker queue. JobRelay consumes them with at-least-once semantics,
deduplicates redeliveries, and pushes each notification to every live
session of the subject it belongs to.
"""

__version__ = "0.1.0"
