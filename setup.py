#!/usr/bin/python
# Copyright 2019 Google Inc. All Rights Reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Create a Python package of the VIP egress reconciler."""

import setuptools

install_requires = ['setuptools']

setuptools.setup(
    author='Google Compute Engine Team',
    author_email='gc-team@google.com',
    description='VIP egress reconciler',
    include_package_data=True,
    install_requires=install_requires,
    extras_require={'test': ['pytest']},
    license='Apache Software License',
    long_description='Route container egress traffic through a floating VIP.',
    name='vip-egress',
    packages=setuptools.find_packages(include=['vip_egress', 'vip_egress.*']),
    python_requires='>=3.6',
    url='https://github.com/GoogleCloudPlatform/compute-image-packages',
    version='1.0.0',
    # Entry points create scripts in /usr/bin that call a function.
    entry_points={
        'console_scripts': [
            'vip_egress_daemon=vip_egress.egress.egress_daemon:main',
        ],
    },
    classifiers=[
        'Development Status :: 5 - Production/Stable',
        'Environment :: No Input/Output (Daemon)',
        'Intended Audience :: System Administrators',
        'License :: OSI Approved :: Apache Software License',
        'Operating System :: POSIX :: Linux',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Topic :: System :: Networking',
        'Topic :: System :: Systems Administration',
    ],
)
