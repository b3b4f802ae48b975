"""
checkout_flow: checkout and onboarding orchestration.

The core lives in checkout_flow.flow. The FastAPI app is built by
checkout_flow.main.create_app().
"""

__version__ = "1.0.0"
