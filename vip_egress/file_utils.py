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

"""A library providing file utilities for setting permissions and locking."""

import contextlib
import errno
import fcntl
import os
import shutil
import subprocess
import tempfile


def _SetSELinuxContext(path):
  """Set the appropriate SELinux context, if SELinux tools are installed.

  Calls /sbin/restorecon on the provided path to set the SELinux context as
  specified by policy. This call does not operate recursively.

  Only some OS configurations use SELinux. It is therefore acceptable for
  restorecon to be missing, in which case we do nothing.

  Args:
    path: string, the path on which to fix the SELinux context.
  """
  restorecon = '/sbin/restorecon'
  if os.path.isfile(restorecon) and os.access(restorecon, os.X_OK):
    subprocess.call([restorecon, path])


def SetPermissions(path, mode=None, mkdir=False):
  """Set the permissions of a path.

  Args:
    path: string, the path for which permissions need to be setup.
    mode: octal string, the permissions to set on the path.
    mkdir: bool, True if the directory (and its parents) needs to be created.
  """
  if mkdir and not os.path.exists(path):
    os.makedirs(path, mode or 0o755)
  elif mode:
    os.chmod(path, mode)
  _SetSELinuxContext(path)


def WriteFile(path, content, mode=0o644):
  """Replace the contents of a file, creating it if needed.

  The content is written to a temporary file in the same directory and moved
  into place, so readers never observe a partially written file.

  Args:
    path: string, the file to write.
    content: string, the complete new contents of the file.
    mode: int, the permissions to set on the file.

  Returns:
    bool, True if the file changed.

  Raises:
    IOError, OSError, raised from file operations.
  """
  try:
    with open(path) as fp:
      if fp.read() == content:
        return False
  except (IOError, OSError):
    pass

  dest_dir = os.path.dirname(path) or '.'
  if not os.path.isdir(dest_dir):
    SetPermissions(dest_dir, mode=0o755, mkdir=True)
  with tempfile.NamedTemporaryFile(
      mode='w', dir=dest_dir, delete=False) as temp:
    temp.write(content)
  os.chmod(temp.name, mode)
  shutil.move(temp.name, path)
  _SetSELinuxContext(path)
  return True


def RemoveFile(path):
  """Delete a file if it exists.

  Args:
    path: string, the file to delete.

  Returns:
    bool, True if a file was removed.

  Raises:
    OSError, raised when the file exists but cannot be removed.
  """
  try:
    os.remove(path)
  except OSError as e:
    if e.errno == errno.ENOENT:
      return False
    raise
  return True


def Lock(fd, path, blocking):
  """Lock the provided file descriptor.

  Args:
    fd: int, the file descriptor of the file to lock.
    path: string, the name of the file to lock.
    blocking: bool, whether the function should return immediately.

  Raises:
    IOError, raised from flock while attempting to lock a file.
  """
  operation = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
  try:
    fcntl.flock(fd, operation)
  except IOError as e:
    if e.errno == errno.EWOULDBLOCK:
      raise IOError('Exception locking %s. File already locked.' % path)
    else:
      raise IOError('Exception locking %s. %s.' % (path, str(e)))


def Unlock(fd, path):
  """Release the lock on the file.

  Args:
    fd: int, the file descriptor of the file to unlock.
    path: string, the name of the file to lock.

  Raises:
    IOError, raised from flock while attempting to release a file lock.
  """
  try:
    fcntl.flock(fd, fcntl.LOCK_UN | fcntl.LOCK_NB)
  except IOError as e:
    if e.errno == errno.EWOULDBLOCK:
      raise IOError('Exception unlocking %s. Locked by another process.' % path)
    else:
      raise IOError('Exception unlocking %s. %s.' % (path, str(e)))


@contextlib.contextmanager
def LockFile(path, blocking=False):
  """Interface to flock-based file locking to prevent concurrent executions.

  Args:
    path: string, the name of the file to lock.
    blocking: bool, whether the function should return immediately.

  Yields:
    None, yields when a lock on the file is obtained.

  Raises:
    IOError, raised from flock locking operations on a file.
    OSError, raised from file operations.
  """
  fd = os.open(path, os.O_CREAT)
  try:
    Lock(fd, path, blocking)
    yield
  finally:
    try:
      Unlock(fd, path)
    finally:
      os.close(fd)
