# /agentflow/utils/metrics.py

from prometheus_client import Counter, Histogram, Gauge

# This file defines all Prometheus metrics used for service monitoring.
# Centralizing them here makes them easy to find and manage.

# Pipeline
inbound_messages_counter = Counter('agentflow_inbound_messages_total', 'Inbound messages processed', ['provider', 'outcome'])
pipeline_latency_histogram = Histogram('agentflow_pipeline_seconds', 'Webhook pipeline processing time in seconds', ['provider'])
active_conversations_gauge = Gauge('agentflow_active_conversation_locks', 'Conversation keys currently being processed')

# Flow
validation_outcomes_counter = Counter('agentflow_validation_outcomes_total', 'Step validation outcomes', ['kind'])
flow_transitions_counter = Counter('agentflow_flow_transitions_total', 'Flow engine outcomes', ['outcome'])

# Agent resolution
agent_resolution_counter = Counter('agentflow_agent_resolutions_total', 'Agent resolutions', ['mode', 'match_kind'])
agent_substitution_counter = Counter('agentflow_agent_substitutions_total', 'Fallback agent substitutions', ['scope'])

# External dependencies
ai_requests_counter = Counter('agentflow_ai_requests_total', 'AI provider requests', ['provider', 'status'])
delivery_counter = Counter('agentflow_deliveries_total', 'Outbound deliveries', ['provider', 'status'])
circuit_state_gauge = Gauge('agentflow_delivery_circuit_state', 'Delivery circuit state (0 closed, 1 half-open, 2 open)', ['provider'])
database_operations_counter = Counter('agentflow_database_operations_total', 'Persistence operations', ['operation', 'status'])

# Protection
rate_limit_rejections_counter = Counter('agentflow_rate_limit_rejections_total', 'Rejected inbound messages', ['reason'])
webhook_signature_counter = Counter('agentflow_webhook_signature_verifications_total', 'Webhook signature verifications', ['status'])
