"""
Identity Provider (IDP) module for OAuth2 functionality.

This module provides the authorization server: client registry, token store,
federated sign-in through Google, and the OAuth2 endpoints built on them.
"""
