#+
# Setuptools script to install nsvg. Make sure setuptools
# <https://setuptools.pypa.io/en/latest/index.html> is installed.
# Invoke from the command line in this directory as follows:
#
#     python3 setup.py build
#     sudo python3 setup.py install
#
# The nanosvg shared library (libnanosvg.so, plus libnanosvgrast.so
# if the rasterizer is built separately) must be installed where
# ctypes.util.find_library can locate it.
#-

import setuptools

setuptools.setup \
  (
    name = "nsvg",
    version = "0.3",
    description = "language bindings for nanosvg",
    long_description = "language bindings for the nanosvg SVG parser and rasterizer, for Python 3.6 or later",
    author = "the nsvg developers",
    license = "zlib",
    py_modules = ["nsvg"],
    python_requires = ">=3.6",
    extras_require =
        {
            "cairo" : ["pycairo"],
            "test" : ["pytest", "pycairo"],
        },
  )
