"""
CDN passthrough reverse proxy.

- Prefix stripping and ordered path rewrite rules
- Outgoing and incoming header rules (forced User-Agent, public CORS
  headers, content type overrides by suffix)
- Locally answered CORS preflights
- Streaming in both directions with one deadline per request
- Same-host redirect following with a bounded count
- OpenTelemetry tracing
"""
