"""Navigator KeyVault Meta information.
   Navigator KeyVault keeps API credentials encrypted on the local machine.
"""
__title__ = 'navigator_keyvault'
__description__ = (
   'Navigator KeyVault keeps API provider credentials encrypted '
   'at rest and validates them against remote endpoints.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/navigator-keyvault'
