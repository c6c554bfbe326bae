import logging
import re
import time
from string import digits

import numpy as np
import pyopencl as cl
import pyopencl.cltypes


class GPUError(Exception):
	pass

class NoPlatformError(GPUError):
	pass

class NoDeviceError(GPUError):
	pass

class CreationError(GPUError):
	pass

class BuildError(GPUError):
	pass

class ArgumentError(GPUError):
	pass

class DispatchError(GPUError):
	pass

class ReadBackError(GPUError):
	pass


DEVICE_TYPES = {
	'gpu': cl.device_type.GPU,
	'cpu': cl.device_type.CPU,
	'accelerator': cl.device_type.ACCELERATOR,
	'all': cl.device_type.ALL,
}

# OpenCL scalar type -> numpy dtype
_CL_DTYPES = {
	'uchar': np.uint8,  'char': np.int8,
	'ushort': np.uint16, 'short': np.int16,
	'uint': np.uint32,  'int': np.int32,
	'ulong': np.uint64, 'long': np.int64,
	'half': np.float16, 'float': np.float32, 'double': np.float64,
}

_QUALIFIERS = {
	'__global', 'global', '__constant', 'constant', '__local', 'local',
	'__private', 'private', 'const', '__const', 'restrict', '__restrict',
	'volatile', '__read_only', 'read_only', '__write_only', 'write_only',
}


def _platforms():
	try:
		platforms = cl.get_platforms()
	except cl.Error as e:
		raise NoPlatformError("Failed to get the platform ID: %s" % e) from e
	if not platforms:
		raise NoPlatformError("Failed to get the platform ID: no OpenCL platform found")
	return platforms

def _devices(platform, device_type):
	try:
		return platform.get_devices(device_type=device_type)
	except cl.Error:
		# DEVICE_NOT_FOUND is reported as an error, not an empty list
		return []


def kernel_signature(code, function_name):
	"""Return the OpenCL type of every parameter of kernel `function_name`.

	Pointer parameters keep their trailing '*', e.g. ['uchar4*', 'uchar4*', 'int', 'int'].
	"""
	match = re.search(r'(?:__)?kernel\s+void\s+' + re.escape(function_name) + r'\s*\(([^)]*)\)', code)
	if match is None:
		raise BuildError("There is no kernel named \"%s\" in the program source" % function_name)

	typenames = []
	for variable in match.group(1).split(','):
		tokens = [t for t in variable.replace('*', ' * ').split() if t not in _QUALIFIERS]
		if len(tokens) < 2:
			raise BuildError("Cannot parse parameter \"%s\" of kernel \"%s\"" % (variable.strip(), function_name))
		typenames.append(''.join(tokens[:-1]))
	return typenames

def cl_dtype(typename):
	base = typename.replace('*', '').translate(str.maketrans('', '', digits))
	try:
		return _CL_DTYPES[base]
	except KeyError:
		raise ArgumentError("Unsupported OpenCL type \"%s\"" % typename) from None

def _vector_count(typename):
	num = ''.join(c for c in typename if c.isdigit())
	return int(num) if num else 1


class GPU():
	def __init__(self, platform_id=0, device_id=0, device_type='gpu', logger=None):
		self._logger = logger or logging.getLogger(__name__)

		if device_type not in DEVICE_TYPES:
			raise GPUError("Unknown device type \"%s\", expected one of %s" % (device_type, ', '.join(DEVICE_TYPES)))

		platforms = _platforms()
		if isinstance(platform_id, str):
			name = platform_id
			platform_id = 0
			for i, platform in enumerate(platforms):
				if name.lower() in platform.name.lower():
					platform_id = i
					break
		if not 0 <= platform_id < len(platforms):
			raise NoPlatformError("Failed to get the platform ID: platform %d requested, %d available" % (platform_id, len(platforms)))

		# PyOpenCL variables
		self._platform = platforms[platform_id]
		devices = _devices(self._platform, DEVICE_TYPES[device_type])
		if not 0 <= device_id < len(devices):
			raise NoDeviceError("Failed to get the device ID: no %s device %d on platform \"%s\"" % (device_type.upper(), device_id, self._platform.name))
		self._device = devices[device_id]

		try:
			self._context = cl.Context([self._device])
		except cl.Error as e:
			raise CreationError("Failed to create the context: %s" % e) from e
		try:
			self._queue = cl.CommandQueue(self._context, self._device)
		except cl.Error as e:
			raise CreationError("Failed to create the command queue: %s" % e) from e

		self._program = None
		self._kernel = None
		self._fname = ''
		self._cl_typenames = []
		self._buffers = []
		self._args_settle = False

		# time record
		self._host2device_time = 0
		self._device2host_time = 0
		self._calculate_time = 0

		self._logger.debug("Using device \"%s\" on platform \"%s\"", self.device_name(), self._platform.name)

	def __enter__(self):
		return self

	def __exit__(self, exc_type, exc_value, traceback):
		self.release()

	def set_program(self, source, function_name):
		"""Build `source` (kernel text or a path to a .cl file) and extract `function_name`."""
		if '(' not in source and source.endswith('.cl'):
			with open(source) as f:
				source = f.read()

		self._clear_program()
		self._cl_typenames = kernel_signature(source, function_name)
		try:
			self._program = cl.Program(self._context, source).build(devices=[self._device])
		except cl.Error as e:
			raise BuildError("Failed to build the program:\n%s" % e) from e
		try:
			self._kernel = cl.Kernel(self._program, function_name)
		except cl.Error as e:
			raise BuildError("Failed to create the kernel \"%s\": %s" % (function_name, e)) from e
		self._fname = function_name
		self._logger.debug("Built kernel %s(%s)", function_name, ', '.join(self._cl_typenames))

	def input_buffer(self, host_arg):
		host_arg = np.ascontiguousarray(host_arg)
		t1 = time.perf_counter()
		buffer = self._new_buffer(cl.mem_flags.READ_ONLY | cl.mem_flags.COPY_HOST_PTR, hostbuf=host_arg)
		t2 = time.perf_counter()
		self._host2device_time += (t2 - t1)
		return buffer

	def output_buffer(self, nbytes):
		return self._new_buffer(cl.mem_flags.WRITE_ONLY, int(nbytes))

	def set_args(self, *args):
		if self._kernel is None:
			raise GPUError("Please set_program before set_args!")

		if len(args) != len(self._cl_typenames):
			raise ArgumentError("%s needs %d arguments, but %d were passed" % (self._fname, len(self._cl_typenames), len(args)))

		self._args_settle = False
		for i, (host_arg, typename) in enumerate(zip(args, self._cl_typenames)):
			device_arg = self._type_transform(host_arg, typename)
			try:
				self._kernel.set_arg(i, device_arg)
			except cl.Error as e:
				raise ArgumentError("Failed to set kernel argument %d (%s): %s" % (i, typename, e)) from e
		self._args_settle = True

	def run(self, global_size):
		if not self._args_settle:
			raise GPUError("Please set_args before run!")

		t1 = time.perf_counter()
		try:
			cl.enqueue_nd_range_kernel(self._queue, self._kernel, tuple(int(n) for n in global_size), None)
		except cl.Error as e:
			raise DispatchError("Failed to execute kernel: %s" % e) from e
		t2 = time.perf_counter()
		self._calculate_time = t2 - t1

	def read_back(self, dest, buffer):
		t1 = time.perf_counter()
		try:
			cl.enqueue_copy(self._queue, dest, buffer, is_blocking=True)
		except cl.Error as e:
			raise ReadBackError("Failed to read buffer: %s" % e) from e
		t2 = time.perf_counter()
		self._device2host_time = t2 - t1
		return dest

	def release(self):
		if self._queue is not None:
			try:
				self._queue.finish()
			except cl.Error as e:
				self._logger.warning("Command queue did not finish cleanly: %s", e)

		for buffer in self._buffers:
			buffer.release()
		self._buffers = []
		self._clear_program()
		self._queue = None
		self._context = None

	def _clear_program(self):
		self._fname = ''
		self._cl_typenames = []
		self._kernel = None
		self._program = None
		self._args_settle = False

	def _new_buffer(self, flags, size=0, hostbuf=None):
		if self._context is None:
			raise GPUError("GPU has been released")
		try:
			buffer = cl.Buffer(self._context, flags, size, hostbuf=hostbuf)
		except cl.Error as e:
			raise CreationError("Failed to create buffer: %s" % e) from e
		self._buffers.append(buffer)
		return buffer

	def _type_transform(self, arg, typename):
		if isinstance(arg, cl.MemoryObject):
			return arg

		dtype = cl_dtype(typename)
		count = _vector_count(typename)
		if typename.endswith('*'):
			arg = np.asarray(arg, dtype=dtype)
			if count == 3 and arg.ndim == 3 and arg.shape[2] == 3:
				arg = np.insert(arg, 3, values=0, axis=2)
			return self.input_buffer(arg)

		if count > 1:
			if np.size(arg) != count:
				raise ArgumentError(typename + ' needs ' + str(count) + ' elements, but ' + str(np.size(arg)) + ' were passed')
			make = getattr(cl.cltypes, 'make_' + typename)
			return make(*np.ravel(arg).tolist())

		return dtype(arg)

	def host2device_time(self):
		return self._host2device_time

	def calculate_time(self):
		return self._calculate_time

	def device2host_time(self):
		return self._device2host_time

	def total_time(self):
		return self._device2host_time + self._host2device_time + self._calculate_time

	def print_performance(self):
		total_time = self.total_time()
		self._logger.info("%s has processed 1 mission,", self.device_name())
		self._logger.info("           total time: %.2f ms", 1000*total_time)
		self._logger.info("  host -> device time: %.2f ms", 1000*self._host2device_time)
		self._logger.info("       calculate time: %.2f ms", 1000*self._calculate_time)
		self._logger.info("  device -> host time: %.2f ms", 1000*self._device2host_time)
		if total_time > 0:
			self._logger.info("calculate/total ratio: %.2f %%", 100*self._calculate_time/total_time)

	def device_name(self):
		return self._device.get_info(cl.device_info.NAME)

	def device_info(self):
		return {
			'platform_name': self._platform.get_info(cl.platform_info.NAME),
			'platform_vendor': self._platform.get_info(cl.platform_info.VENDOR),
			'platform_version': self._platform.get_info(cl.platform_info.VERSION),
			'name': self._device.get_info(cl.device_info.NAME),
			'vendor': self._device.get_info(cl.device_info.VENDOR),
			'version': self._device.get_info(cl.device_info.VERSION),
			'driver_version': self._device.get_info(cl.device_info.DRIVER_VERSION),
			'max_work_group_size': self._device.get_info(cl.device_info.MAX_WORK_GROUP_SIZE),
			'max_compute_units': self._device.get_info(cl.device_info.MAX_COMPUTE_UNITS),
			'local_mem_size': self._device.get_info(cl.device_info.LOCAL_MEM_SIZE),
		}

	def print_info(self):
		info = self.device_info()
		self._logger.info("PyOpenCL Version: %s", cl.VERSION_TEXT)
		self._logger.info("Platform Name: %s", info['platform_name'])
		self._logger.info("Platform Vendor: %s", info['platform_vendor'])
		self._logger.info("Platform Version: %s", info['platform_version'])
		self._logger.info("Device Name: %s", info['name'])
		self._logger.info("Device Vendor: %s", info['vendor'])
		self._logger.info("Device Version: %s", info['version'])
		self._logger.info("Driver Version: %s", info['driver_version'])
		self._logger.info("Max Work Group Size: %s", info['max_work_group_size'])
		self._logger.info("Max Compute Units: %s", info['max_compute_units'])
		self._logger.info("Local Memory Size: %s KB", info['local_mem_size']/1024)


def list_devices(device_type='gpu'):
	"""Every (platform index, device index, device name) of the given type."""
	found = []
	for i, platform in enumerate(_platforms()):
		for j, device in enumerate(_devices(platform, DEVICE_TYPES[device_type])):
			found.append((i, j, device.get_info(cl.device_info.NAME)))
	return found

def print_devices(device_type='gpu'):
	for i, j, name in list_devices(device_type):
		print("(", i, ",", j, "):", name)
