"""avdops - Azure Virtual Desktop session host operations toolkit

Philosophy:
- Ruthless simplicity
- Brick architecture (self-contained modules)
- Security by design (no credentials in code, secrets never logged)
- Fail fast with helpful guidance

avdops takes AVD session hosts in and out of maintenance (drain, evict,
open local Bastion access), restores them to their host pool with a fresh
registration token, and prepares Shared Image Gallery resources for image
builds.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
