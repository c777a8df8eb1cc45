import os
import re

from setuptools import setup

long_description = """
swapout pushes the memory of a running process out to swap.  It moves the
process into a small, dedicated memory cgroup (cgroup v2 memory.high or
cgroup v1 memory.limit_in_bytes), watches VmRSS in /proc/<pid>/status until
the resident set has shrunk below a target, and then restores the limit and
removes the cgroup again - also when the process exits, the iteration budget
runs out, setup fails half-way or the tool is interrupted.
"""

module = 'swapout'

basedir = os.path.dirname(os.path.abspath(__file__))

with open(os.path.join(basedir, '%s.py' % module)) as f:
    _moduletext = f.read()

def readmeta(fieldname):
    return re.search(r'__%s__\s*=\s*"(.*)"' % re.escape(fieldname), _moduletext).group(1).strip()

setup(
    name='swapout',
    version=readmeta('version'),
    description='Force a process into swap by temporarily confining it to a small memory cgroup',
    long_description=long_description.strip(),
    license='GPLv3+',

    author=readmeta('author'),
    author_email=readmeta('email'),

    py_modules=[module],
    zip_safe=False,
    python_requires='>=3.8',

    install_requires=[
        'PyYAML',
        'tomli; python_version < "3.11"',
    ],
    extras_require=dict(
        build=['twine', 'wheel'],
        test=['pytest'],
    ),

    entry_points={
        "console_scripts": ['swapout=%s:main' % module]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)",
        "Operating System :: POSIX :: Linux",
        "Topic :: Utilities",
        "Topic :: System :: Operating System Kernels :: Linux",
        "Programming Language :: Python :: 3",
    ],
)
