"""HTTP surface: health/status routes and the inbound CRM webhook receiver."""
