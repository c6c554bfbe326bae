import os

import cv2
import numpy as np


class ImageError(Exception):
	pass

class ImageLoadError(ImageError):
	pass

class ImageSaveError(ImageError):
	pass


_CONVERSIONS = {
	('BGR', 'RGB'): cv2.COLOR_BGR2RGB,
	('RGB', 'BGR'): cv2.COLOR_RGB2BGR,
	('BGR', 'BGRA'): cv2.COLOR_BGR2BGRA,
	('BGR', 'RGBA'): cv2.COLOR_BGR2RGBA,
	('RGB', 'RGBA'): cv2.COLOR_RGB2RGBA,
	('RGB', 'BGRA'): cv2.COLOR_RGB2BGRA,
	('BGRA', 'BGR'): cv2.COLOR_BGRA2BGR,
	('BGRA', 'RGB'): cv2.COLOR_BGRA2RGB,
	('BGRA', 'RGBA'): cv2.COLOR_BGRA2RGBA,
	('RGBA', 'RGB'): cv2.COLOR_RGBA2RGB,
	('RGBA', 'BGR'): cv2.COLOR_RGBA2BGR,
	('RGBA', 'BGRA'): cv2.COLOR_RGBA2BGRA,
	('GRAY', 'BGR'): cv2.COLOR_GRAY2BGR,
	('GRAY', 'RGB'): cv2.COLOR_GRAY2RGB,
	('GRAY', 'BGRA'): cv2.COLOR_GRAY2BGRA,
	('GRAY', 'RGBA'): cv2.COLOR_GRAY2RGBA,
	('BGR', 'GRAY'): cv2.COLOR_BGR2GRAY,
	('RGB', 'GRAY'): cv2.COLOR_RGB2GRAY,
	('BGRA', 'GRAY'): cv2.COLOR_BGRA2GRAY,
	('RGBA', 'GRAY'): cv2.COLOR_RGBA2GRAY,
}

_CHANNELS = {'GRAY': 1, 'BGR': 3, 'RGB': 3, 'BGRA': 4, 'RGBA': 4}


def load(path):
	"""Decode a colour image into a BGR uint8 array of shape (height, width, 3)."""
	if not os.path.isfile(path):
		raise ImageLoadError("Couldn't find the input image \"%s\"" % path)
	image = cv2.imread(path, cv2.IMREAD_COLOR)
	if image is None:
		raise ImageLoadError("Couldn't decode the input image \"%s\"" % path)
	return image

def save(path, image):
	try:
		written = cv2.imwrite(path, image)
	except cv2.error as e:
		raise ImageSaveError("Couldn't write \"%s\": %s" % (path, e)) from e
	if not written:
		raise ImageSaveError("Couldn't write \"%s\"" % path)

def convert_channels(src, src_format, dst_format):
	"""Reorder or pad the channels of `src`, returning a new array.

	Padding to four channels sets alpha to 255, dropping to three discards it.
	"""
	src_format = src_format.upper()
	dst_format = dst_format.upper()
	if src_format not in _CHANNELS or dst_format not in _CHANNELS:
		raise ValueError("Unknown channel layout %s -> %s" % (src_format, dst_format))

	channels = 1 if src.ndim == 2 else src.shape[2]
	if channels != _CHANNELS[src_format]:
		raise ValueError("%s image must have %d channels, got %d" % (src_format, _CHANNELS[src_format], channels))

	if src_format == dst_format:
		return src.copy()
	return cv2.cvtColor(np.ascontiguousarray(src), _CONVERSIONS[(src_format, dst_format)])
