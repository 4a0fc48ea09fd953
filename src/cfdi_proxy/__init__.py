"""
cfdi_proxy — stateless SAT CFDI proxy.

Authenticates against SAT with a FIEL uploaded per request and retrieves
CFDIs either by driving the CFDI portal (query, download, download by UUID)
or through the "Descarga Masiva" web service (submit, verify, fetch).
Credentials and documents are never persisted.

Built on the Railway-Oriented Programming (ROP) framework for
explicit, composable, functional error handling.
"""

__version__ = "0.1.0"
