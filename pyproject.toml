[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "multivpc"
version = "0.1.0"
description = "VPC interconnection across clusters: NAT-gateway tunnels, gateway failover, ECMP routes and VPC DNS forwarding"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "kubernetes",
    "kube-ovn",
    "vpc",
    "nat-gateway",
    "tunnel",
    "gre",
    "vxlan",
    "ecmp",
    "dns",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["multivpc"]

[tool.hatch.build.targets.sdist]
include = ["multivpc", "tests"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
