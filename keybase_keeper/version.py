"""Keybase Keeper Meta information.
   Keybase Keeper encrypts secrets for Keybase users, caching their public keys.
"""
__title__ = 'keybase_keeper'
__description__ = (
   'Keybase Keeper encrypts secrets for one or many Keybase users '
   'with a TTL-bound public key cache.'
)
__version__ = '0.1.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/keybase-keeper'
