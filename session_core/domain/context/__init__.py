 # This module handles session context

# +---------------------+
# |   Facts repository  |   (Durable, best effort)
# |---------------------|
# | Company facts       |
# | Person facts        |
# +---------------------+

# +---------------------+
# |   Session store     |   (Versioned, merged, per key)
# |---------------------|
# | Identity (consent)  |
# | Inferred role       |
# | Capability log      |
# | Multimodal history  |
# +---------------------+

#    \    /
#     \  /
#      \/
# +------------------------------+
# |        System preamble       |   (Assembled per turn)
# |------------------------------|
# | Identity and facts           |
# | Recent capabilities          |
# | Recent multimodal analyses   |
# | Feature guidance             |
# +------------------------------+
#         |
#         v
#   [LLM turn / tool call]
