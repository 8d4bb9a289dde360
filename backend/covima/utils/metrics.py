# /covima/utils/metrics.py

from prometheus_client import Counter, Histogram

# All Prometheus metrics used by the bot live here.

# Message pipeline
message_counter = Counter('bot_messages_total', 'Inbound messages processed', ['status', 'source'])
intent_counter = Counter('bot_intents_total', 'Classified intents', ['intent', 'source'])
flow_resets_counter = Counter('bot_flow_resets_total', 'Conversation resets', ['reason'])
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])

# Upstream services
ai_requests_counter = Counter('ai_requests_total', 'Total AI requests', ['model', 'status'])
outbound_messages_counter = Counter('outbound_messages_total', 'Outbound messages', ['provider', 'status'])
database_operations_counter = Counter('database_operations_total', 'Database operations', ['operation', 'status'])
event_publish_counter = Counter('event_publish_total', 'Live events published', ['channel', 'status'])

# Attendance
attendance_registrations_counter = Counter(
    'attendance_registrations_total', 'Attendance registrations', ['method', 'outcome']
)

# Security
webhook_signature_counter = Counter('webhook_signature_verifications_total', 'Webhook signature verifications', ['status'])
