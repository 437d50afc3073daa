"""
HTTP surface

- /api, /api/available-dates, /api/recent: snapshot queries (query.py)
- /update-cache: single-flight refresh trigger
- /health, static /data
Entry point:
    python -m api.server --config config/params.yaml
"""
