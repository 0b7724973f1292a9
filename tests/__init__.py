"""Test package setup.

The data directory and the Qt platform are configured before the package under test is
imported, so the module level settings singleton never touches the user's real data.
"""
import os
import tempfile

os.environ.setdefault('QT_QPA_PLATFORM', 'offscreen')
os.environ['LEDGERSYNC_DATA_DIR'] = tempfile.mkdtemp(prefix='ledgersync_test_')
