"""
org-federation - Correlate departments and users across directory providers.

This package maps an organization's groups and users from external directories
(Azure AD, LDAP) onto a uniform model and keeps provider-independent external
identities on them so records can be matched across systems.
"""

__version__ = "1.0.0"
__author__ = "Org Federation Team"
