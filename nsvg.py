"""A Python 3 wrapper for nanosvg <https://github.com/memononen/nanosvg>
using ctypes. nanosvg is a small SVG parser plus a scanline rasterizer;
this module takes care of the parts that matter on the Python side of the
boundary:

    * marshalling SVG text and unit names into the NUL-terminated
      strings that nanosvg expects, rejecting embedded NULs
    * ownership of the opaque NSVGimage and NSVGrasterizer objects,
      each of which is released exactly once
    * computing the geometry of the RGBA output buffer, and only handing
      its contents back after nanosvg has filled it
    * translating null returns into Python exceptions

Typical usage:

    doc = nsvg.parse_file("drawing.svg", nsvg.Units.PIXEL, 96)
    image = doc.rasterize(2.0)
    image.write_to_png("drawing.png") # requires Pycairo

A Pycairo ImageSurface can also be obtained from a rasterized image,
if Pycairo is installed.
"""
#+
# Copyright 2018-2019 the nsvg developers.
# Licensed under the zlib licence
# <https://github.com/memononen/nanosvg/blob/master/LICENSE.txt>,
# to be compatible with nanosvg itself.
#-

import sys
import os
import math
import enum
import array
import logging
import weakref
import ctypes as ct
import ctypes.util
try :
    import cairo
except ImportError :
    cairo = None
#end try

_logger = logging.getLogger(__name__)

BYTES_PER_PIXEL = 4 # RGBA, 8 bits per component
INT_MAX = 2 ** 31 - 1 # limit on width, height and stride arguments to nsvgRasterize

class NSVG :
    "useful definitions adapted from nanosvg.h and nanosvgrast.h. Only the leading" \
    " fields of the structures that this module actually reads are declared."

    class shape(ct.Structure) :
        pass # private
    #end shape

    class image(ct.Structure) :
        pass
    image._fields_ = \
            [
                ("width", ct.c_float), # width of the image
                ("height", ct.c_float), # height of the image
                ("shapes", ct.POINTER(shape)), # linked list of shapes in the image
            ]
    #end image

    class rasterizer(ct.Structure) :
        pass # private
    #end rasterizer

#end NSVG

def _declare_parser(lib) :
    # declares the prototypes of the entry points in nanosvg.h.
    lib.nsvgParse.restype = ct.c_void_p
    lib.nsvgParse.argtypes = (ct.c_void_p, ct.c_void_p, ct.c_float)
      # nsvgParse modifies its input string in place, hence no c_char_p
    lib.nsvgDelete.restype = None
    lib.nsvgDelete.argtypes = (ct.c_void_p,)
#end _declare_parser

def _declare_raster(lib) :
    # declares the prototypes of the entry points in nanosvgrast.h.
    lib.nsvgCreateRasterizer.restype = ct.c_void_p
    lib.nsvgCreateRasterizer.argtypes = ()
    lib.nsvgRasterize.restype = None
    lib.nsvgRasterize.argtypes = \
        (
            ct.c_void_p, # rasterizer
            ct.c_void_p, # image
            ct.c_float, # tx
            ct.c_float, # ty
            ct.c_float, # scale
            ct.c_void_p, # dst
            ct.c_int, # w
            ct.c_int, # h
            ct.c_int, # stride
        )
    lib.nsvgDeleteRasterizer.restype = None
    lib.nsvgDeleteRasterizer.argtypes = (ct.c_void_p,)
#end _declare_raster

#+
# Error model
#-

class NSVGError(Exception) :
    "base class for failures at the nanosvg boundary. The set of subclasses is fixed:" \
    " EncodingError, IoError, ParseError, AllocationError and RasterizeError. The" \
    " stage attribute names the step that failed."

    stage = None

    def __init__(self, message) :
        self.args = (("nanosvg %s error -- %s" % (self.stage, message)),)
        self.message = message
    #end __init__

#end NSVGError

class EncodingError(NSVGError) :
    "text or a pathname could not be turned into a NUL-terminated string."

    stage = "encoding"

    def __init__(self, message, position = None) :
        super().__init__(message)
        self.position = position # offset of offending NUL, if that was the problem
    #end __init__

#end EncodingError

class IoError(NSVGError) :
    "the SVG file could not be read. The underlying OSError is available as __cause__."

    stage = "io"

    def __init__(self, filename, cause) :
        super().__init__("cannot read %r: %s" % (filename, cause.strerror or cause))
        self.filename = filename
        self.errno = cause.errno
    #end __init__

#end IoError

class ParseError(NSVGError) :
    "nsvgParse returned null: the content is not a usable SVG document."

    stage = "parse"

#end ParseError

class AllocationError(NSVGError) :
    "nsvgCreateRasterizer returned null: nanosvg could not allocate its scratch state."

    stage = "allocation"

#end AllocationError

class RasterizeError(NSVGError) :
    "the output buffer could not be allocated or interpreted as an image of the" \
    " declared size."

    stage = "rasterize"

#end RasterizeError

#+
# Marshalling of text across the boundary
#-

class Units(enum.Enum) :
    "the units that nanosvg understands for resolving lengths. Each value is the" \
    " exact NUL-terminated token passed to nsvgParse."
    PIXEL = b"px\0"
    POINT = b"pt\0"
    PERCENT = b"pc\0"
    MILLIMETER = b"mm\0"
    CENTIMETER = b"cm\0"
    INCH = b"in\0"

    def to_foreign_token(self) :
        "returns the NUL-terminated token for this unit."
        return \
            self.value
    #end to_foreign_token

#end Units

_units_by_name = dict((u.value[:-1].decode("ascii"), u) for u in Units)

def unit_token(units) :
    "returns the NUL-terminated nanosvg token for units, which may be a Units" \
    " value or one of the strings “px”, “pt”, “pc”, “mm”, “cm” or “in”."
    if isinstance(units, str) :
        if units not in _units_by_name :
            raise ValueError("unrecognized units %r" % units)
        #end if
        units = _units_by_name[units]
    elif not isinstance(units, Units) :
        raise TypeError("expecting units to be a Units value or unit name")
    #end if
    return \
        units.value
#end unit_token

def to_foreign_text(data) :
    "converts data (str, or a bytes-like object) to a fresh, mutable, NUL-terminated" \
    " ctypes character buffer, raising EncodingError if it contains an embedded NUL." \
    " str data is encoded as UTF-8."
    if isinstance(data, str) :
        try :
            data = data.encode("utf-8")
        except UnicodeEncodeError as fail :
            raise EncodingError("text cannot be encoded as UTF-8: %s" % fail) from fail
        #end try
    elif isinstance(data, (bytes, bytearray, memoryview)) :
        data = bytes(data)
    else :
        raise TypeError("expecting str or bytes-like content, not %s" % type(data).__name__)
    #end if
    pos = data.find(b"\0")
    if pos >= 0 :
        raise EncodingError("embedded NUL byte at offset %d" % pos, pos)
    #end if
    return \
        ct.create_string_buffer(data) # one byte longer, for the terminator
#end to_foreign_text

def to_foreign_path(path) :
    "converts a str, bytes or path-like pathname to filesystem-encoded bytes," \
    " raising EncodingError if it contains an embedded NUL or cannot be encoded."
    path = os.fspath(path)
    if isinstance(path, str) :
        pos = path.find("\0")
    else :
        pos = path.find(b"\0")
    #end if
    if pos >= 0 :
        raise EncodingError("embedded NUL in pathname at offset %d" % pos, pos)
    #end if
    try :
        result = os.fsencode(path)
    except UnicodeEncodeError as fail :
        raise EncodingError("pathname cannot be encoded for the filesystem: %s" % fail) from fail
    #end try
    return \
        result
#end to_foreign_path

#+
# The engine itself
#-

class Engine :
    "wrapper for the nanosvg entry points. Instantiate this directly with objects" \
    " exposing those entry points, or more usually call Engine.load() to open the" \
    " shared libraries. Most callers will simply use get_default_engine()." \
    "\n" \
    "Null pointers are returned as None, addresses as integers."

    __slots__ = ("parser_lib", "raster_lib", "__weakref__") # to forestall typos

    def __init__(self, parser_lib, raster_lib = None) :
        if raster_lib == None :
            raster_lib = parser_lib
        #end if
        self.parser_lib = parser_lib
        self.raster_lib = raster_lib
    #end __init__

    @staticmethod
    def load(libname = None, rastlibname = None) :
        "opens the nanosvg shared library, and the separate rasterizer library if" \
        " there is one, and returns an Engine for them. Default names are looked up" \
        " with ctypes.util.find_library."
        if libname == None :
            libname = ctypes.util.find_library("nanosvg")
            if libname == None :
                raise OSError("cannot find the nanosvg library")
            #end if
        #end if
        parser_lib = ct.cdll.LoadLibrary(libname)
        _declare_parser(parser_lib)
        if rastlibname == None :
            rastlibname = ctypes.util.find_library("nanosvgrast")
        #end if
        if rastlibname != None :
            raster_lib = ct.cdll.LoadLibrary(rastlibname)
        else :
            # assume rasterizer is compiled into the same library
            raster_lib = parser_lib
        #end if
        _declare_raster(raster_lib)
        _logger.info("loaded nanosvg from %s (rasterizer from %s)", libname, rastlibname or libname)
        return \
            Engine(parser_lib, raster_lib)
    #end load

    def parse(self, text, units, dpi) :
        "calls nsvgParse. text must be the address of a writable NUL-terminated buffer."
        return \
            self.parser_lib.nsvgParse(text, units, dpi)
    #end parse

    def delete_document(self, nsvgobj) :
        self.parser_lib.nsvgDelete(nsvgobj)
    #end delete_document

    def image_size(self, nsvgobj) :
        "returns the (width, height) recorded in an NSVGimage."
        imagerec = ct.cast(nsvgobj, ct.POINTER(NSVG.image)).contents
        return \
            (imagerec.width, imagerec.height)
    #end image_size

    def create_rasterizer(self) :
        return \
            self.raster_lib.nsvgCreateRasterizer()
    #end create_rasterizer

    def rasterize(self, rasterizer, nsvgobj, tx, ty, scale, dst, width, height, stride) :
        "calls nsvgRasterize, which writes non-premultiplied RGBA pixels into dst."
        self.raster_lib.nsvgRasterize(rasterizer, nsvgobj, tx, ty, scale, dst, width, height, stride)
    #end rasterize

    def delete_rasterizer(self, rasterizer) :
        self.raster_lib.nsvgDeleteRasterizer(rasterizer)
    #end delete_rasterizer

#end Engine

default_engine = None
# Note on Engine management: pass an Engine explicitly to the functions
# below, or leave it out to use the global default, which is loaded on
# first use. set_default_engine() replaces the global default.

def get_default_engine() :
    "returns the global default Engine, automatically loading it if it doesn’t exist."
    global default_engine
    if default_engine == None :
        default_engine = Engine.load()
    #end if
    return \
        default_engine
#end get_default_engine

def set_default_engine(engine) :
    "installs engine as the global default Engine, or forgets the default if None."
    global default_engine
    if engine != None and not isinstance(engine, Engine) :
        raise TypeError("expecting an Engine")
    #end if
    default_engine = engine
#end set_default_engine

def _resolve_engine(engine) :
    if engine == None :
        engine = get_default_engine()
    elif not isinstance(engine, Engine) :
        raise TypeError("expecting engine to be an Engine")
    #end if
    return \
        engine
#end _resolve_engine

#+
# Owned foreign objects
#-

def parse_bytes(content, units = Units.PIXEL, dpi = 96.0, engine = None) :
    "parses SVG content held in memory (str or bytes-like) and returns a Document."
    token = unit_token(units)
    text = to_foreign_text(content)
    engine = _resolve_engine(engine)
    nsvgobj = engine.parse(ct.addressof(text), token, dpi)
    if nsvgobj == None :
        raise ParseError("document is malformed or unsupported")
    #end if
    return \
        Document(engine, nsvgobj)
#end parse_bytes

def parse_str(text, units = Units.PIXEL, dpi = 96.0, engine = None) :
    "parses SVG source text and returns a Document."
    if not isinstance(text, str) :
        raise TypeError("expecting SVG text as a str")
    #end if
    return \
        parse_bytes(text, units, dpi, engine)
#end parse_str

def parse_file(path, units = Units.PIXEL, dpi = 96.0, engine = None) :
    "reads and parses the SVG file with the specified pathname, returning a Document."
    filename = to_foreign_path(path)
    try :
        with open(filename, "rb") as infile :
            content = infile.read()
        #end with
    except OSError as fail :
        raise IoError(os.fsdecode(filename), fail) from fail
    #end try
    return \
        parse_bytes(content, units, dpi, engine)
#end parse_file

class Document :
    "represents a parsed NSVGimage. Do not instantiate directly; call parse_file," \
    " parse_bytes or parse_str instead. The NSVGimage is deleted by close(), on" \
    " leaving a “with” block, or when this object is garbage-collected, whichever" \
    " comes first."

    __slots__ = ("__weakref__", "_nsvgobj", "_engine", "width", "height") # to forestall typos

    _instances = weakref.WeakValueDictionary()
      # For mapping of NSVGimage addresses back to the Document objects
      # that own them, so no NSVGimage is ever owned twice.

    def __new__(celf, engine, nsvgobj) :
        assert nsvgobj != None, "cannot wrap null NSVGimage"
        self = celf._instances.get(nsvgobj)
        if self == None or self._nsvgobj == None :
            self = super().__new__(celf)
            self._nsvgobj = None # do first for sake of destructor
            self._engine = engine
            self._nsvgobj = nsvgobj
            celf._instances[nsvgobj] = self
            self.width, self.height = engine.image_size(nsvgobj)
            _logger.debug("parsed document %#x, %g × %g", nsvgobj, self.width, self.height)
        else :
            assert self._engine is engine, "engine mismatch with existing Document instance"
        #end if
        return \
            self
    #end __new__

    def _release(self) :
        # pointer is forgotten before the delete call, so it can never be deleted twice.
        nsvgobj, self._nsvgobj = self._nsvgobj, None
        if nsvgobj != None :
            self._engine.delete_document(nsvgobj)
            if _logger != None :
                # might have vanished during program exit
                _logger.debug("deleted document %#x", nsvgobj)
            #end if
        #end if
        return \
            nsvgobj
    #end _release

    def __del__(self) :
        self._release()
    #end __del__

    def close(self) :
        "deletes the NSVGimage. Does nothing if it has already been deleted."
        self._release()
    #end close

    def __enter__(self) :
        return \
            self
    #end __enter__

    def __exit__(self, exception_type, exception_value, traceback) :
        self.close()
    #end __exit__

    @property
    def released(self) :
        "whether the NSVGimage has been deleted."
        return \
            self._nsvgobj == None
    #end released

    @property
    def engine(self) :
        "the Engine that parsed this Document."
        return \
            self._engine
    #end engine

    @property
    def size(self) :
        "the (width, height) of the document."
        return \
            (self.width, self.height)
    #end size

    def _live_obj(self) :
        if self._nsvgobj == None :
            raise ValueError("document has been released")
        #end if
        return \
            self._nsvgobj
    #end _live_obj

    def rasterize(self, scale = 1.0) :
        "renders the document at the specified scale with a temporary Rasterizer," \
        " returning an RGBAImage."
        self._live_obj()
        with Rasterizer(self._engine) as rasterizer :
            result = rasterizer.rasterize(self, scale)
        #end with
        return \
            result
    #end rasterize

    def rasterize_to_raw(self, scale = 1.0) :
        "renders the document at the specified scale, returning a tuple" \
        " (width, height, pixels) where pixels is a bytes object of RGBA data."
        return \
            self.rasterize(scale).to_raw()
    #end rasterize_to_raw

    def __repr__(self) :
        return \
            (
                "<%s.%s %g × %g%s>"
            %
                (
                    type(self).__module__, type(self).__qualname__,
                    self.width, self.height,
                    ("", " (released)")[self.released],
                )
            )
    #end __repr__

#end Document

class Rasterizer :
    "representation of an NSVGrasterizer. Instantiate this, optionally with an Engine." \
    " One Rasterizer can render any number of Documents, one at a time; it must not" \
    " be used from more than one thread at once."

    __slots__ = ("__weakref__", "_nsvgobj", "_engine") # to forestall typos

    def __init__(self, engine = None) :
        self._nsvgobj = None # do first for sake of destructor
        engine = _resolve_engine(engine)
        self._engine = engine
        nsvgobj = engine.create_rasterizer()
        if nsvgobj == None :
            raise AllocationError("cannot create rasterizer")
        #end if
        self._nsvgobj = nsvgobj
        _logger.debug("created rasterizer %#x", nsvgobj)
    #end __init__

    def _release(self) :
        nsvgobj, self._nsvgobj = self._nsvgobj, None
        if nsvgobj != None :
            self._engine.delete_rasterizer(nsvgobj)
            if _logger != None :
                _logger.debug("deleted rasterizer %#x", nsvgobj)
            #end if
        #end if
        return \
            nsvgobj
    #end _release

    def __del__(self) :
        self._release()
    #end __del__

    def close(self) :
        "deletes the NSVGrasterizer. Does nothing if it has already been deleted."
        self._release()
    #end close

    def __enter__(self) :
        return \
            self
    #end __enter__

    def __exit__(self, exception_type, exception_value, traceback) :
        self.close()
    #end __exit__

    @property
    def released(self) :
        "whether the NSVGrasterizer has been deleted."
        return \
            self._nsvgobj == None
    #end released

    def rasterize(self, document, scale = 1.0, tx = 0.0, ty = 0.0) :
        "renders document at the specified scale, returning an RGBAImage. The image" \
        " size is the document size times scale, rounded down. tx and ty offset the" \
        " drawing within the image, in pixels, after scaling."
        if not isinstance(document, Document) :
            raise TypeError("expecting a Document")
        #end if
        if self._nsvgobj == None :
            raise ValueError("rasterizer has been released")
        #end if
        docobj = document._live_obj()
        if document.engine is not self._engine :
            raise ValueError("document and rasterizer belong to different engines")
        #end if
        dst = OutputBuffer.for_document(document, scale)
        if dst.capacity != 0 :
            self._engine.rasterize \
              (
                self._nsvgobj,
                docobj,
                tx, ty,
                scale,
                dst.address,
                dst.width,
                dst.height,
                dst.stride
              )
        #end if
        dst.mark_filled() # only now is it safe to look at the contents
        return \
            RGBAImage.from_raw(dst.width, dst.height, dst.take())
    #end rasterize

#end Rasterizer

#+
# Pixels
#-

def _scaled_extent(extent, scale) :
    # size in whole pixels of extent times scale. Like a saturating
    # float-to-unsigned cast, NaN and negative values give 0.
    result = extent * scale
    if math.isnan(result) or result <= 0 :
        result = 0
    elif math.isinf(result) :
        raise RasterizeError("image extent %g × %g is not finite" % (extent, scale))
    else :
        result = math.floor(result)
    #end if
    return \
        result
#end _scaled_extent

class OutputBuffer :
    "storage for nsvgRasterize to write into. width and height are in pixels; rows" \
    " are stride = width × 4 bytes apart, with no padding, for a total of capacity" \
    " bytes. The contents cannot be taken until mark_filled() has been called."

    __slots__ = ("width", "height", "stride", "capacity", "_storage", "_filled") # to forestall typos

    def __init__(self, width, height) :
        if width < 0 or height < 0 :
            raise ValueError("buffer dimensions cannot be negative")
        #end if
        stride = width * BYTES_PER_PIXEL
        if width > INT_MAX or height > INT_MAX or stride > INT_MAX :
            raise RasterizeError("image size %d × %d is too large" % (width, height))
        #end if
        capacity = stride * height
        try :
            storage = (ct.c_ubyte * capacity)()
        except (MemoryError, OverflowError) as fail :
            raise RasterizeError("cannot allocate %d-byte output buffer" % capacity) from fail
        #end try
        self.width = width
        self.height = height
        self.stride = stride
        self.capacity = capacity
        self._storage = storage
        self._filled = False
    #end __init__

    @staticmethod
    def dimensions_for(width, height, scale) :
        "returns the (width, height) in whole pixels of a width × height area" \
        " rendered at the specified scale."
        return \
            (_scaled_extent(width, scale), _scaled_extent(height, scale))
    #end dimensions_for

    @classmethod
    def for_document(celf, document, scale) :
        "returns a new OutputBuffer sized for rendering document at the specified scale."
        width, height = celf.dimensions_for(document.width, document.height, scale)
        _logger.debug("output buffer %d × %d at scale %g", width, height, scale)
        return \
            celf(width, height)
    #end for_document

    @property
    def address(self) :
        "the address of the storage, to pass to nsvgRasterize."
        return \
            ct.addressof(self._storage)
    #end address

    @property
    def filled(self) :
        return \
            self._filled
    #end filled

    def mark_filled(self) :
        "to be called once the storage has been completely written."
        self._filled = True
    #end mark_filled

    def take(self) :
        "returns a bytes copy of the filled storage."
        if not self._filled :
            raise RuntimeError("output buffer has not been filled")
        #end if
        return \
            bytes(self._storage)
    #end take

#end OutputBuffer

class RGBAImage :
    "the result of rasterizing: width × height pixels of non-premultiplied RGBA," \
    " 8 bits per component, stored in row-major order from the top left with no" \
    " row padding. Get one of these from Document.rasterize() or Rasterizer.rasterize()."

    __slots__ = ("width", "height", "pixels") # to forestall typos

    def __init__(self, width, height, pixels) :
        self.width = width
        self.height = height
        self.pixels = pixels
    #end __init__

    @staticmethod
    def from_raw(width, height, pixels) :
        "constructs an RGBAImage from raw pixel bytes, raising RasterizeError if their" \
        " number does not match the dimensions."
        pixels = bytes(pixels)
        expected = width * height * BYTES_PER_PIXEL
        if len(pixels) != expected :
            raise RasterizeError \
              (
                "%d bytes of pixels cannot form a %d × %d image (need %d)"
              %
                (len(pixels), width, height, expected)
              )
        #end if
        return \
            RGBAImage(width, height, pixels)
    #end from_raw

    @property
    def stride(self) :
        "number of bytes per row."
        return \
            self.width * BYTES_PER_PIXEL
    #end stride

    @property
    def dimensions(self) :
        return \
            (self.width, self.height)
    #end dimensions

    def to_raw(self) :
        "returns a tuple (width, height, pixels)."
        return \
            (self.width, self.height, self.pixels)
    #end to_raw

    def get_pixel(self, x, y) :
        "returns the (r, g, b, a) components of the pixel at the specified position."
        if not (0 <= x < self.width and 0 <= y < self.height) :
            raise IndexError("pixel position (%d, %d) out of range" % (x, y))
        #end if
        pos = y * self.stride + x * BYTES_PER_PIXEL
        return \
            tuple(self.pixels[pos : pos + BYTES_PER_PIXEL])
    #end get_pixel

    def to_array(self) :
        "returns a Python array object containing a copy of the pixels."
        return \
            array.array("B", self.pixels)
    #end to_array

    def make_image_surface(self) :
        "creates a Cairo ImageSurface in FORMAT_ARGB32 containing a copy of the" \
        " pixels, converted to premultiplied alpha."
        if cairo == None :
            raise NotImplementedError("Pycairo not installed")
        #end if
        dst_pitch = cairo.ImageSurface.format_stride_for_width(cairo.FORMAT_ARGB32, self.width)
        pixels = array.array("B", bytes(dst_pitch * self.height))
        if sys.byteorder == "little" :
            order = (2, 1, 0, 3) # Cairo pixels are native-endian 32-bit words
        else :
            order = (1, 2, 3, 0)
        #end if
        src = self.pixels
        src_pitch = self.stride
        for row in range(self.height) :
            srcpos = row * src_pitch
            dstpos = row * dst_pitch
            for col in range(self.width) :
                r, g, b, a = src[srcpos : srcpos + 4]
                for i, c in zip(order, ((r * a + 127) // 255, (g * a + 127) // 255, (b * a + 127) // 255, a)) :
                    pixels[dstpos + i] = c
                #end for
                srcpos += 4
                dstpos += 4
            #end for
        #end for
        return \
            cairo.ImageSurface.create_for_data \
              (
                pixels,
                cairo.FORMAT_ARGB32,
                self.width,
                self.height,
                dst_pitch
              )
    #end make_image_surface

    def write_to_png(self, filename) :
        "saves the image as a PNG file via Cairo."
        self.make_image_surface().write_to_png(filename)
    #end write_to_png

    def __repr__(self) :
        return \
            "<%s.%s %d × %d>" % (type(self).__module__, type(self).__qualname__, self.width, self.height)
    #end __repr__

#end RGBAImage
