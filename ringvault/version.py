"""RingVault Meta information.
   RingVault decides who may see which secrets inside isolated rings.
"""
__title__ = 'ringvault'
__description__ = (
   'Ring-scoped authorization and key-chain disclosure engine '
   'for a multi-tenant credential vault.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2026 RingVault Authors'
__author__ = 'RingVault Authors'
__author_email__ = 'maintainers@ringvault.dev'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/ringvault/ringvault'
