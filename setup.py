import os
import re

from setuptools import setup

long_description = """
The script watches a game server for player activity and temporarily stops
the server process ("kill -STOP") when nobody has been online for a while,
resuming it ("kill -CONT") as soon as a connection attempt or other activity
is observed.  Hibernating an idle server frees CPU and lets the host page out
its memory.

The hibernation state is kept in a small state directory, so the monitor can
be restarted at any time without losing track of a suspended server.
"""

module = 'hibernation_monitor'

basedir = os.path.dirname(os.path.abspath(__file__))

with open(os.path.join(basedir, '%s.py' % module)) as f:
    _moduletext = f.read()

def readmeta(fieldname):
    return re.search(r'__%s__\s*=\s*"(.*)"' % re.escape(fieldname), _moduletext).group(1).strip()

setup(
    name='hibernation-monitor',
    version=readmeta('version'),
    description='Simple-Stupid monitor doing "kill -STOP" and "kill -CONT" to hibernate an idle game server',
    long_description=long_description.strip(),
    license='GPLv3+',

    author=readmeta('author'),

    py_modules=[module],
    zip_safe=False,
    include_package_data=True,
    python_requires='>=3.8',

    install_requires=[
        'PyYAML',
    ],
    extras_require=dict(
        build=['twine', 'wheel'],
        test=['pytest'],
    ),

    entry_points={
        "console_scripts": ['hibernation-monitor=%s:main' % module]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)",
        "Topic :: Utilities",
        "Topic :: Games/Entertainment",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
    ],
)
