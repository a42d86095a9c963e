"""
Admin maintenance service.

- app.aggregator: sequential fan-out of one operation across named services.
- app.client: HTTP client for the services' internal maintenance endpoints.
- app.main: FastAPI application exposing the admin directive.
"""
