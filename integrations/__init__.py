"""
integrations — provider framework for external review platforms.

Provides:
  • The ``SocialMediaProvider`` contract every platform adapter implements
  • A registry resolving platform slugs to configured providers
  • AES-256-GCM encryption of OAuth tokens at rest
  • Signed OAuth state for CSRF protection
  • The classified error taxonomy shared by providers and the sync core

Platform adapters (Google Business Profile, Facebook, Instagram,
Xiaohongshu, …) live outside this package and are loaded by dotted path.
"""
