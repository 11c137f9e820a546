"""Export an auditor bundle for one finalized experiment directory:
- manifest, detached signature, timestamp token
- trust store snapshot and revocation list
- offline verification report
Produces: audit_bundle_<experiment>_<epoch>.zip

Usage: python tools/export_audit_bundle.py <experiment dir> [out dir]
"""
import sys

from immutable_sandbox.bundle import export_audit_bundle
from immutable_sandbox.config import Settings
from immutable_sandbox.keys import Keyring
from immutable_sandbox.timestamping import Rfc3161TimestampAuthority
from immutable_sandbox.verifier import IntegrityVerifier


def main():
    if len(sys.argv) not in (2, 3):
        print("Usage: python tools/export_audit_bundle.py <experiment dir> [out dir]")
        raise SystemExit(2)

    location = sys.argv[1]
    out_dir = sys.argv[2] if len(sys.argv) == 3 else "."
    settings = Settings.from_env()
    keyring = Keyring.from_settings(settings)

    rfc3161 = Rfc3161TimestampAuthority(settings.tsa_url, settings.tsa_timeout, ca_file=settings.tsa_ca_file)
    verifier = IntegrityVerifier.from_keyring(keyring, rfc3161=rfc3161, follow_symlinks=settings.follow_symlinks)
    report = verifier.verify_location(location)
    out = export_audit_bundle(location, keyring, out_dir, report=report)
    print(str(out))
    print(report.outcome.value, file=sys.stderr)


if __name__ == "__main__":
    main()
