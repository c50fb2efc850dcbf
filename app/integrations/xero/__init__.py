"""
Xero Integration Package
OAuth 2.0 connection lifecycle, data fetching, caching and BAS/FAS reports.

Submodules are imported directly (e.g. ``app.integrations.xero.service``);
the models layer depends on ``schemas`` so this package stays import-light.
"""
