"""API routers, registered on the app in :mod:`wagate.main`."""
