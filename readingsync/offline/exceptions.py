from typing import Optional


class OfflineSyncError(Exception):
	"""Base class for device-side queue and replay errors"""


class ValidationError(OfflineSyncError):
	"""The server rejected the reading; retrying the same payload cannot succeed"""

	def __init__(self, message: str, status_code: Optional[int] = None):
		super().__init__(message)
		self.status_code = status_code


class AuthError(OfflineSyncError):
	"""No usable credentials, or the server refused them"""


class TransientError(OfflineSyncError):
	"""Worth retrying later with backoff"""

	def __init__(self, message: str, status_code: Optional[int] = None):
		super().__init__(message)
		self.status_code = status_code


class OfflineError(TransientError):
	"""The backend is unreachable"""


class PhotoUploadError(TransientError):
	"""The photo attached to a reading could not be uploaded"""


class StorageQuotaError(OfflineSyncError):
	"""Staging a photo would exceed the local storage quota"""
