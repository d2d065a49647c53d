# Run context: what a step can see when it is invoked
#
# +---------------------+
# |      Repository     |   (live run records, one lock per run)
# |---------------------|
# | Steps + status      |
# | Append-only log     |
# | Memory map          |
# +---------------------+
#
# +---------------------+
# |      Memory         |   (run scoped, patch-merged)
# |---------------------|
# | fileUrl             |
# | lastSummary         |
# | tool patches        |
# +---------------------+
#
#    \    /
#     \  /
#      \/
# +------------------------------+
# |         ToolContext          |   (built fresh for every attempt)
# |------------------------------|
# | run id, owner, instruction   |
# | copy of memory               |
# +------------------------------+
#         |
#         v
#   [tool handler]
