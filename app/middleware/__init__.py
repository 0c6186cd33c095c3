"""Request-scoped ASGI middleware (correlation id for loan requests and their logs)"""
