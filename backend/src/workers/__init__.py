"""Background workers for the automated matching pass.

Tasks are enqueued by the API with plain string arguments and open their
own database session.
"""
