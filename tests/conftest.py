import numpy as np
import pytest

import clgpu


@pytest.fixture(scope="session")
def device_type():
	"""A device type that can open a context here: a GPU if present, else any device."""
	for device_type in ('gpu', 'all'):
		try:
			clgpu.GPU(device_type=device_type).release()
		except clgpu.GPUError:
			continue
		return device_type
	pytest.skip("no OpenCL device available")

@pytest.fixture
def gpu(device_type):
	with clgpu.GPU(device_type=device_type) as gpu:
		yield gpu

@pytest.fixture
def rng():
	return np.random.default_rng(1234)


class FakePlatform:
	name = "Fake Platform"

	def __init__(self, devices=()):
		self._devices = list(devices)

	def get_devices(self, device_type=None):
		return self._devices

@pytest.fixture
def no_platform(monkeypatch):
	monkeypatch.setattr(clgpu.cl, "get_platforms", lambda: [])

@pytest.fixture
def no_gpu(monkeypatch):
	def fail(*args, **kwargs):
		raise AssertionError("OpenCL object created without a device")

	monkeypatch.setattr(clgpu.cl, "get_platforms", lambda: [FakePlatform()])
	monkeypatch.setattr(clgpu.cl, "Context", fail)
	monkeypatch.setattr(clgpu.cl, "Buffer", fail)
