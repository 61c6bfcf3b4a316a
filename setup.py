import os
import re

from setuptools import setup

long_description = """
tprotect watches the system-wide major page fault counter and, when it
spikes, temporarily stops (kill -STOP) the process with the most major
page faults since the last check.  When the counter has been quiet for a
while the stopped processes are resumed (kill -CONT) one at a time.  On
SIGINT or SIGTERM every process stopped by tprotect is resumed before it
exits.  The point is to keep a box responsive long enough for a sysadm
to investigate, or for the offending process to finish or be killed by
the oom killer, instead of having the whole host thrashed.
"""

module = "tprotect"

basedir = os.path.dirname(os.path.abspath(__file__))

with open(os.path.join(basedir, "%s.py" % module)) as f:
    _moduletext = f.read()


def readmeta(fieldname):
    return re.search(r'__%s__\s*=\s*"(.*)"' % re.escape(fieldname), _moduletext).group(1).strip()


setup(
    name="tprotect",
    version=readmeta("version"),
    description='Adaptive user-space guard doing "kill -STOP" and "kill -CONT" to protect from thrashing',
    long_description=long_description.strip(),
    license="GPLv3+",
    py_modules=[module],
    zip_safe=False,
    python_requires=">=3.8",
    install_requires=[
        "PyYAML",
        'tomli; python_version < "3.11"',
    ],
    extras_require=dict(
        build=["twine", "wheel"],
        test=["pytest"],
    ),
    entry_points={"console_scripts": ["tprotect=%s:main" % module]},
    classifiers=[
        "Development Status :: 4 - Beta",
        "License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)",
        "Topic :: Utilities",
        "Topic :: System :: Monitoring",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
    ],
)
