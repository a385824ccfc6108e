# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from creditline_cli.commands import main

main()
