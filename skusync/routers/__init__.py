"""REST control surface — thin FastAPI routers over the services."""
