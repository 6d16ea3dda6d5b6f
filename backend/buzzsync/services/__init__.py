# Services package init
"""
BuzzSync Backend — Services Layer
===================================

Service Inventory:
    - ChangeFeedService:   "changed since" polling per resource kind
    - GeoSearchEngine:     radius + filter venue search
    - TransactionGateway:  atomic batches and read-only queries
    - statement_parser:    classifies statements into Select/Insert/Update
    - IdentityService:     resolves forwarded credentials via the auth provider

Every storage-facing service takes the ConnectionPoolManager in its
constructor; none of them holds state between requests.
"""
