# Make `import wecom_proxy` resolve to this checkout when running pytest
# from the repository root without installing the package.
import os
import sys

SERVICE_ROOT = os.path.dirname(__file__)

if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)
