# Copyright (c) 2025.
# This file is part of path-refine, released under the MIT License.
