"""Request context management for observability.

Context variables carry request-scoped identifiers across async boundaries so
log records emitted deep inside services can be correlated with the inbound
request and with the outbound Bridge call that produced them.
"""

from contextvars import ContextVar

# Request ID - unique per inbound HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Authenticated local user for user-facing routes
user_id_var: ContextVar[str] = ContextVar("user_id", default="")

# Correlation ID of the Bridge API call currently in flight
bridge_correlation_id_var: ContextVar[str] = ContextVar("bridge_correlation_id", default="")

# Bridge webhook event being processed
webhook_event_id_var: ContextVar[str] = ContextVar("webhook_event_id", default="")
