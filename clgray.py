import argparse
import logging
import sys

import numpy as np

import climage
import clgpu

INPUT_PATH = "ISIC_0073502.jpg"
OUTPUT_PATH = "GreyScaledImage.jpg"

KERNEL_NAME = "convertToGrayscale"
GRAYSCALE_KERNEL = """
__kernel void convertToGrayscale(__global uchar4* inputImage, __global uchar4* outputImage, const int imgWidth, const int imgHeight) {
    int x = get_global_id(0);
    int y = get_global_id(1);
    int index = y * imgWidth + x;
    uchar4 px = inputImage[index];
    uchar grayscale = (px.x + px.y + px.z) / 3;
    outputImage[index] = (uchar4)(grayscale, grayscale, grayscale, px.w);
}
"""

logger = logging.getLogger(__name__)


def setup_logging(verbosity=0, quiet=False):
	formatter = logging.Formatter(
		"%(asctime)s - %(name)s - %(levelname)s - %(message)s",
		datefmt="%Y-%m-%d %H:%M:%S",
	)
	handler = logging.StreamHandler(sys.stderr)
	handler.setFormatter(formatter)

	log = logging.getLogger("cl-grayscale")
	if quiet:
		log.setLevel(logging.CRITICAL + 1)
	elif verbosity >= 2:
		log.setLevel(logging.DEBUG)
	elif verbosity == 1:
		log.setLevel(logging.INFO)
	else:
		log.setLevel(logging.WARNING)

	log.handlers = [handler]
	log.propagate = False
	return log


def rgba_to_gray(gpu, image_rgba):
	"""Run the grayscale kernel over an RGBA uint8 image and return the RGBA result."""
	height, width = image_rgba.shape[:2]
	nbytes = 4 * width * height

	gpu.set_program(GRAYSCALE_KERNEL, KERNEL_NAME)
	input_buffer = gpu.input_buffer(image_rgba)
	output_buffer = gpu.output_buffer(nbytes)
	gpu.set_args(input_buffer, output_buffer, width, height)
	gpu.run((width, height))

	result = np.empty((height, width, 4), dtype=np.uint8)
	return gpu.read_back(result, output_buffer)

def to_grayscale(gpu, image_bgr):
	image_rgba = climage.convert_channels(image_bgr, 'BGR', 'RGBA')
	result = rgba_to_gray(gpu, image_rgba)
	return climage.convert_channels(result, 'RGBA', 'BGR')


def run(input_path=INPUT_PATH, output_path=OUTPUT_PATH, platform_id=0, device_id=0,
		device_type='gpu', timing=False, logger=logger):
	"""Convert `input_path` to grayscale into `output_path`. Returns the exit code."""
	try:
		image = climage.load(input_path)
		logger.info("Loaded %s (%dx%d)", input_path, image.shape[1], image.shape[0])
		with clgpu.GPU(platform_id, device_id, device_type, logger=logger) as gpu:
			logger.info("Running on %s", gpu.device_name())
			gray = to_grayscale(gpu, image)
			if timing:
				gpu.print_performance()
		climage.save(output_path, gray)
	except (climage.ImageError, clgpu.GPUError) as e:
		logger.error("%s", e)
		return 1

	logger.info("Wrote %s", output_path)
	return 0


def parse_args(argv=None):
	parser = argparse.ArgumentParser(
		prog="cl-grayscale",
		description="Convert an image to grayscale with an OpenCL kernel.")
	parser.add_argument("input", nargs="?", default=INPUT_PATH, help="input image (default: %(default)s)")
	parser.add_argument("output", nargs="?", default=OUTPUT_PATH, help="output image (default: %(default)s)")
	parser.add_argument("--platform", default="0",
						help="platform index or part of its name (default: first platform)")
	parser.add_argument("--device", type=int, default=0, help="device index on the platform")
	parser.add_argument("--device-type", choices=sorted(clgpu.DEVICE_TYPES), default="gpu")
	parser.add_argument("--list-devices", action="store_true", help="list OpenCL devices and exit")
	parser.add_argument("--info", action="store_true", help="log platform and device details")
	parser.add_argument("--timing", action="store_true", help="log transfer and kernel times")
	parser.add_argument("-v", "--verbose", action="count", default=0)
	parser.add_argument("-q", "--quiet", action="store_true", help="only print the success message")
	args = parser.parse_args(argv)
	if args.quiet and (args.info or args.timing):
		parser.error("--quiet cannot be combined with --info or --timing")
	if args.platform.isdigit():
		args.platform = int(args.platform)
	return args

def main(argv=None):
	args = parse_args(argv)
	log = setup_logging(args.verbose + (1 if args.info or args.timing else 0), args.quiet)

	if args.list_devices:
		try:
			clgpu.print_devices(args.device_type)
		except clgpu.GPUError as e:
			log.error("%s", e)
			return 1
		return 0

	if args.info:
		try:
			with clgpu.GPU(args.platform, args.device, args.device_type, logger=log) as gpu:
				gpu.print_info()
		except clgpu.GPUError as e:
			log.error("%s", e)
			return 1

	code = run(args.input, args.output, args.platform, args.device, args.device_type,
			   timing=args.timing, logger=log)
	if code == 0:
		print("Grayscale conversion has been completed. The Output saved as %s" % args.output)
	return code


if __name__ == "__main__":
	sys.exit(main())
