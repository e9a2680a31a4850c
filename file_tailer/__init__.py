"""Follow a file for appended data, like ``tail -f``.

This package provides a worker thread that watches a single file through
directory change notifications and reports appended bytes, truncation,
deletion and recreation of the file to a callback object.
"""

__version__ = "0.1.0"
