#!/usr/bin/env python3
#
# acmesecrets/models/certificates.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate resources and their persisted credential layout."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from cryptography import x509
from cryptography.x509.oid import NameOID
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .entries import (
	DATA_CERTIFICATE,
	DATA_CERTIFICATE_RESOURCE,
	DATA_PRIVATE_KEY,
	LABEL_MANAGED,
	LABEL_TRUE,
	CredentialEntry,
)

_PEM_CERT_BEGIN = b"-----BEGIN CERTIFICATE-----"
_PEM_CERT_END = b"-----END CERTIFICATE-----"


class CertificateParseError(ValueError):
	"""Raised when a stored certificate or its metadata cannot be decoded."""


def split_pem_chain(pem_data: bytes) -> list[bytes]:
	"""Split a PEM bundle into its individual certificate blocks."""
	certs = []
	while _PEM_CERT_BEGIN in pem_data:
		start = pem_data.find(_PEM_CERT_BEGIN)
		end = pem_data.find(_PEM_CERT_END, start)
		if end == -1:
			break
		end += len(_PEM_CERT_END)
		certs.append(pem_data[start:end])
		pem_data = pem_data[end:]
	return certs


def load_leaf_certificate(pem_data: bytes) -> x509.Certificate:
	"""Parse the first (leaf) certificate of a PEM bundle."""
	blocks = split_pem_chain(pem_data)
	if not blocks:
		raise CertificateParseError("no PEM certificate found")
	try:
		return x509.load_pem_x509_certificate(blocks[0])
	except ValueError as exc:
		raise CertificateParseError(f"invalid certificate: {exc}") from exc


def certificate_dns_names(cert: x509.Certificate) -> list[str]:
	"""DNS names from the SAN extension, falling back to the subject CN."""
	try:
		san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
		names = san.value.get_values_for_type(x509.DNSName)
	except x509.ExtensionNotFound:
		names = [
			attr.value for attr in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
		]
	return [str(n).lower() for n in names]


class CertificateResource(BaseModel):
	"""Issued certificate plus the protocol metadata needed to renew it.

	Serialized as JSON into ``acme.certificate-resource``. The certificate
	and key are also stored flat under ``tls.crt`` / ``tls.key``; on read the
	flat values win.
	"""
	model_config = ConfigDict(populate_by_name=True)

	domain: str = ""
	domains: list[str] = Field(default_factory=list)
	cert_url: str = Field(default="", alias="certUrl")
	cert_stable_url: str = Field(default="", alias="certStableUrl")
	account_ref: str = Field(default="", alias="accountRef")
	certificate: str = ""
	private_key: str = Field(default="", alias="privateKey")
	issuer_certificate: str = Field(default="", alias="issuerCertificate")

	@property
	def certificate_bytes(self) -> bytes:
		return self.certificate.encode("ascii")

	@property
	def private_key_bytes(self) -> bytes:
		return self.private_key.encode("ascii")

	def leaf(self) -> x509.Certificate:
		if not self.certificate:
			raise CertificateParseError("certificate resource has no certificate")
		return load_leaf_certificate(self.certificate_bytes)

	def expiry(self) -> datetime:
		"""``notAfter`` of the leaf certificate (UTC)."""
		return self.leaf().not_valid_after_utc

	def dns_names(self) -> list[str]:
		return certificate_dns_names(self.leaf())

	def to_json(self) -> bytes:
		return self.model_dump_json(by_alias=True).encode("utf-8")

	def to_credential_entry(self, name: str, namespace: str, *, resource_version: Optional[str] = None) -> CredentialEntry:
		"""Render the managed credential entry for this resource."""
		if not name:
			raise ValueError("credential entry name must be set")
		return CredentialEntry(
			name=name,
			namespace=namespace,
			labels={LABEL_MANAGED: LABEL_TRUE},
			data={
				DATA_CERTIFICATE_RESOURCE: self.to_json(),
				DATA_CERTIFICATE: self.certificate_bytes,
				DATA_PRIVATE_KEY: self.private_key_bytes,
			},
			resource_version=resource_version,
		)

	@classmethod
	def from_credential_entry(cls, entry: CredentialEntry) -> "CertificateResource":
		"""Decode the resource stored in a credential entry.

		Raises:
			CertificateParseError: the metadata blob is missing or malformed
		"""
		blob = entry.data.get(DATA_CERTIFICATE_RESOURCE)
		if not blob:
			raise CertificateParseError("no certificate resource data found on entry")
		try:
			resource = cls.model_validate_json(blob)
		except (ValidationError, ValueError) as exc:
			raise CertificateParseError(f"malformed certificate resource: {exc}") from exc

		updates = {}
		try:
			if DATA_CERTIFICATE in entry.data:
				updates["certificate"] = entry.data[DATA_CERTIFICATE].decode("ascii")
			if DATA_PRIVATE_KEY in entry.data:
				updates["private_key"] = entry.data[DATA_PRIVATE_KEY].decode("ascii")
		except UnicodeDecodeError as exc:
			raise CertificateParseError(f"certificate data is not PEM text: {exc}") from exc
		return resource.model_copy(update=updates) if updates else resource


class CertificateRequest(BaseModel):
	"""Transient description of one issuance."""
	hosts: list[str]
	is_renewal: bool = False
	existing_resource: Optional[CertificateResource] = None
	private_key: Optional[bytes] = None
