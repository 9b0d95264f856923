"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY

# OAuth metrics
try:
    oauth_connect_attempts_counter = Counter(
        'adpilot_oauth_connect_attempts_total',
        'Total number of OAuth connection attempts by outcome',
        ['provider', 'outcome']
    )
except ValueError:
    oauth_connect_attempts_counter = REGISTRY._names_to_collectors.get('adpilot_oauth_connect_attempts_total')

try:
    provider_disconnects_counter = Counter(
        'adpilot_provider_disconnects_total',
        'Total number of provider disconnects',
        ['provider']
    )
except ValueError:
    provider_disconnects_counter = REGISTRY._names_to_collectors.get('adpilot_provider_disconnects_total')

try:
    token_refresh_counter = Counter(
        'adpilot_token_refresh_total',
        'Total number of provider token refresh attempts',
        ['provider', 'status']
    )
except ValueError:
    token_refresh_counter = REGISTRY._names_to_collectors.get('adpilot_token_refresh_total')

# Session metrics
try:
    session_decode_failures_counter = Counter(
        'adpilot_session_decode_failures_total',
        'Total number of session cookies rejected during verification',
        ['reason']
    )
except ValueError:
    session_decode_failures_counter = REGISTRY._names_to_collectors.get('adpilot_session_decode_failures_total')

# Rate limiting metrics
try:
    rate_limit_rejections_counter = Counter(
        'adpilot_platform_rate_limit_rejections_total',
        'Total number of platform requests rejected by the rate limiter',
        ['platform', 'window']
    )
except ValueError:
    rate_limit_rejections_counter = REGISTRY._names_to_collectors.get('adpilot_platform_rate_limit_rejections_total')

try:
    rate_limit_sweep_counter = Counter(
        'adpilot_rate_limit_sweep_removed_total',
        'Total number of expired rate limit entries removed by the sweeper'
    )
except ValueError:
    rate_limit_sweep_counter = REGISTRY._names_to_collectors.get('adpilot_rate_limit_sweep_removed_total')

# Platform error metrics
try:
    platform_errors_counter = Counter(
        'adpilot_platform_errors_total',
        'Total number of classified platform errors',
        ['platform', 'kind']
    )
except ValueError:
    platform_errors_counter = REGISTRY._names_to_collectors.get('adpilot_platform_errors_total')
