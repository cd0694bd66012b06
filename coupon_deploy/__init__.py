"""coupon_deploy package root.

Deployment toolkit for the Coupon lending protocol.

- :py:mod:`coupon_deploy.create_address` predicts contract addresses of future deployments
- :py:mod:`coupon_deploy.sequencer` runs the nonce-sequenced deployment pipeline
- :py:mod:`coupon_deploy.pipeline` declares the protocol contracts and their wiring

"""

import sys


#: Minimum required Python version to run this package
MIN_PYTHON_VERSION = (3, 10)


def _check_python_version():
    """Try early abort if the Python version is too old."""

    # Use Python tuple comparison for version numbers
    # https://stackoverflow.com/a/1093331/315168
    if sys.version_info < MIN_PYTHON_VERSION:
        raise RuntimeError(f"coupon-deploy needs Python {MIN_PYTHON_VERSION[0]}.{MIN_PYTHON_VERSION[1]} or later")


_check_python_version()
