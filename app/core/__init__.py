"""Core Business Logic Module

This module provides the request gateway logic, independent of HTTP
frameworks.

Module Structure:
    - templates.py      : Template store and ${name} substitution engine
    - request_types.py  : Request-type registry, validation and wire transforms
    - oci/              : Request signer and HTTP dispatcher for OCI Identity
    - lifecycle.py      : Request store and PENDING/COMPLETED/ERROR/CANCELLED tracker
    - rbac.py           : Actor, company directory and authorization oracle
    - exceptions.py     : Error taxonomy (HTTP status + machine code)
    - provisioning_service.py : RequestService orchestration

Usage Pattern:
    These modules are NOT auto-imported. Import explicitly when needed:
        from app.core.provisioning_service import RequestService, build_service
        from app.core.templates import substitute
        from app.core.oci import OciRequestSigner
"""
