# Routes package init
"""
BuzzSync Backend — API Routes Package
=======================================

Route Inventory:
    - feeds.py:        GET  /resources/{kind}/updates   (change feeds)
    - venues.py:       GET  /venues/search              (geo + filter search)
    - transaction.py:  POST /transaction                (atomic statement batch)
                       POST /query                      (single read-only SELECT)
    - health.py:       GET  /health                     (pool + storage probe)
                       GET  /health/database            (admin storage report)

Routes stay thin: parse the request, call a service from
buzzsync.dependencies, shape the response. Errors propagate to the global
handlers in main.py.
"""
