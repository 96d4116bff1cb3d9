"""
nfce_retrieval — NFC-e (model 65) XML retrieval engine.

Resolves each access key's authorization protocol through the authority's
mutual-TLS SOAP service, downloads the XML document from the Portal REST
API, and records per-key progress of batch download sessions.

Built on Railway-Oriented Programming: every port returns a Result.
"""

__version__ = "0.1.0"
